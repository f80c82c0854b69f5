import asyncio

import pytest

from ucibus.watcher import DirectoryWatcher, diff_snapshots, snapshot


def test_diff_snapshots():
    old = {"network": 1.0, "firewall": 2.0, "system": 3.0}
    new = {"network": 1.0, "firewall": 2.5, "dhcp": 4.0}
    changed, removed = diff_snapshots(old, new)
    assert changed == ["dhcp", "firewall"]
    assert removed == ["system"]


def test_snapshot_skips_hidden_files_and_dirs(tmp_path):
    (tmp_path / "network").write_text("x")
    (tmp_path / ".network.tmp").write_text("x")
    (tmp_path / "subdir").mkdir()
    assert set(snapshot(tmp_path)) == {"network"}
    assert snapshot(tmp_path / "missing") == {}


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_polling_watcher_reports_changes_and_removals(tmp_path):
    changed, removed = [], []
    (tmp_path / "old").write_text("x")
    watcher = DirectoryWatcher(
        tmp_path, asyncio.get_running_loop(), changed.append, removed.append,
        poll_interval=0.05, force_polling=True,
    )
    watcher.start()
    try:
        await _wait_for(lambda: watcher.mode == "poll")
        (tmp_path / "network").write_text("config a 'b'\n")
        (tmp_path / ".hidden").write_text("x")
        (tmp_path / "old").unlink()
        await _wait_for(lambda: "network" in changed and "old" in removed)
    finally:
        await asyncio.to_thread(watcher.stop)

    assert ".hidden" not in changed
    assert watcher.mode == "poll"
