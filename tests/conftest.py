import pytest

from ucibus.engine import SyncEngine

NETWORK = """\
config interface 'lan'
\toption proto 'static'
\toption ipaddr '192.168.1.1'

config interface 'wan'
\toption proto dhcp
"""


@pytest.fixture
def uci_root(tmp_path):
    (tmp_path / "uci").mkdir()
    (tmp_path / "uci_backup").mkdir()
    return tmp_path


@pytest.fixture
def network_file(uci_root):
    path = uci_root / "uci" / "network"
    path.write_text(NETWORK)
    return path


@pytest.fixture
def make_engine(uci_root):
    def factory(bus=None, **kwargs):
        kwargs.setdefault("debounce", 0.02)
        return SyncEngine(
            uci_root / "uci",
            uci_root / "uci_backup",
            uci_root / "uci_uuid_mapping.json",
            bus,
            **kwargs,
        )

    return factory
