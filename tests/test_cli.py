import json

from click.testing import CliRunner

from ucibus.cli import cli


def test_init_creates_layout(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ["init", "--dir", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "ucibus.toml").exists()
    assert (tmp_path / "uci").is_dir()
    assert (tmp_path / "uci_backup").is_dir()

    again = runner.invoke(cli, ["init", "--dir", str(tmp_path)])
    assert again.exit_code == 0
    assert "already exists" in again.output


def test_validate_ok_and_error(uci_root, network_file):
    runner = CliRunner()
    ok = runner.invoke(cli, ["--root", str(uci_root), "validate", "network"])
    assert ok.exit_code == 0
    assert "ok (2 sections)" in ok.output

    (uci_root / "uci" / "broken").write_text("config a 'b'\nwhat is this\n")
    bad = runner.invoke(cli, ["--root", str(uci_root), "validate", "broken"])
    assert bad.exit_code == 1
    assert "line 2" in bad.output


def test_validate_missing_file(uci_root):
    result = CliRunner().invoke(cli, ["--root", str(uci_root), "validate", "ghost"])
    assert result.exit_code != 0
    assert "no such config file" in result.output


def test_show_json(uci_root, network_file):
    result = CliRunner().invoke(cli, ["--root", str(uci_root), "show", "network", "--json"])
    assert result.exit_code == 0, result.output
    sections = json.loads(result.output)
    assert [s["sectionName"] for s in sections] == ["lan", "wan"]
    assert sections[0]["values"] == {"proto": "static", "ipaddr": "192.168.1.1"}
    assert sections[0]["uuid"] is None


def test_show_text(uci_root, network_file):
    result = CliRunner().invoke(cli, ["--root", str(uci_root), "show", "network"])
    assert result.exit_code == 0
    assert "interface lan  [unassigned]" in result.output
    assert "proto = 'static'" in result.output


def test_check_acl(uci_root):
    runner = CliRunner()
    allowed = runner.invoke(cli, ["--root", str(uci_root), "check-acl", "client", "commands/edit", "publish"])
    assert allowed.exit_code == 0
    assert allowed.output.startswith("allow: client (client)")

    denied = runner.invoke(cli, ["--root", str(uci_root), "check-acl", "client", "system/startup", "publish"])
    assert denied.exit_code == 1
    assert denied.output.startswith("deny")
