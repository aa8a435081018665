"""
Pytest fixtures for tickstatus tests.

Stand-ins for the D-Bus session bus and the netifaces interface tables so
the probes can be exercised without a desktop session or real interfaces.
"""

import netifaces
import pytest

import tickstatus


class FakePlayer:
    """An MPRIS player object as pydbus exposes it."""

    def __init__(self, status="Playing", metadata=None, fail=False):
        self.status = status
        self.metadata = {} if metadata is None else metadata
        self.fail = fail

    @property
    def PlaybackStatus(self):
        return self.status

    @property
    def Metadata(self):
        if self.fail:
            raise RuntimeError("org.freedesktop.DBus.Error.NoReply")
        return self.metadata


class FakeDBusDaemon:
    def __init__(self, names, fail=False):
        self.names = names
        self.fail = fail

    def ListNames(self):
        if self.fail:
            raise RuntimeError("org.freedesktop.DBus.Error.Disconnected")
        return self.names


class FakeBus:
    """Session bus with a fixed set of players, keyed by bus name."""

    def __init__(self, players=None, fail=False):
        self.players = dict(players or {})
        self.fail = fail

    def get(self, name, path=None):
        if name == ".DBus":
            names = ["org.freedesktop.DBus", "org.freedesktop.Notifications"]
            return FakeDBusDaemon(names + list(self.players), fail=self.fail)
        return self.players[name]


@pytest.fixture
def fake_bus():
    """Factory: fake_bus({'org.mpris.MediaPlayer2.mpv': FakePlayer(...)})."""
    return FakeBus


@pytest.fixture
def fake_player():
    return FakePlayer


@pytest.fixture
def fake_interfaces(monkeypatch):
    """Install an interface table: {iface: {family: [addr, ...]}}."""

    def install(table):
        def ifaddresses(iface):
            if iface not in table:
                raise ValueError("You must specify a valid interface name.")
            return {
                af: [{"addr": addr} for addr in addrs]
                for af, addrs in table[iface].items()
            }

        monkeypatch.setattr(tickstatus.netifaces, "interfaces", lambda: list(table))
        monkeypatch.setattr(tickstatus.netifaces, "ifaddresses", ifaddresses)
        return table

    return install


@pytest.fixture
def default_interfaces(fake_interfaces):
    return fake_interfaces({
        "lo": {netifaces.AF_INET: ["127.0.0.1"], netifaces.AF_INET6: ["::1"]},
        "eth0": {
            netifaces.AF_INET: ["192.168.1.5"],
            netifaces.AF_INET6: ["fe80::1%eth0"],
        },
    })
