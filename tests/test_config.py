from pathlib import Path

import pytest

from geoallow.cli import build_parser
from geoallow.config import build_settings, load_conf, validate_config
from geoallow.errors import ConfigError
from geoallow.models import Backend, Ipv6Mode, Provider, Settings

CONF = """\
# geoallow settings
COUNTRIES="IT,FR"
PROVIDER='ripe'
SSH_PORT=2222   # moved
USE_BLOCKLIST=yes
IPV6_MODE=geo
BACKEND=iptables
SSH_HITCOUNT=5
UNKNOWN_KEY=1
lowercase=ignored
"""


def settings_from(argv, conf=None):
    return build_settings(build_parser().parse_args(argv), conf or {})


def test_load_conf(tmp_path):
    path = tmp_path / "geoallow.conf"
    path.write_text(CONF)
    cfg = load_conf(str(path))
    assert cfg == {"COUNTRIES": "IT,FR", "PROVIDER": "ripe", "SSH_PORT": "2222", "USE_BLOCKLIST": "yes",
                   "IPV6_MODE": "geo", "BACKEND": "iptables", "SSH_HITCOUNT": "5"}


def test_missing_conf_is_not_an_error(tmp_path):
    assert load_conf(str(tmp_path / "nope.conf")) == {}
    assert load_conf(None) == {}


def test_defaults():
    s = settings_from([])
    assert s.countries == {"IT": Provider.IPDENY}
    assert s.ssh_port == 22
    assert s.ipv6_mode is Ipv6Mode.OPEN
    assert s.backend is None
    assert s.work_dir == Path("/var/lib/geoallow")
    assert s.check_connectivity


def test_conf_values(tmp_path):
    path = tmp_path / "geoallow.conf"
    path.write_text(CONF)
    s = settings_from([], load_conf(str(path)))
    assert s.countries == {"IT": Provider.RIPE, "FR": Provider.RIPE}
    assert s.ssh_port == 2222
    assert s.use_blocklist
    assert s.ipv6_mode is Ipv6Mode.GEO
    assert s.backend is Backend.IPTABLES
    assert s.mitigation.hitcount == 5


def test_command_line_overrides_conf():
    conf = {"COUNTRIES": "IT", "PROVIDER": "ripe", "SSH_PORT": "2222", "IPV6_MODE": "geo"}
    s = settings_from(["-c", "DE;nirsoft:US", "-p", "ipdeny", "-s", "2200", "--block-ipv6",
                       "--backend", "nftables", "--work-dir", "/tmp/x", "--skip-connectivity-check"], conf)
    assert s.countries == {"DE": Provider.IPDENY, "US": Provider.NIRSOFT}
    assert s.ssh_port == 2200
    assert s.ipv6_mode is Ipv6Mode.BLOCKED
    assert s.backend is Backend.NFTABLES
    assert s.work_dir == Path("/tmp/x")
    assert not s.check_connectivity


def test_update_blocklists_implies_blocklist():
    s = settings_from(["--update-blocklists", "--blocklist-dir", "/srv/block"])
    assert s.use_blocklist and s.update_blocklists
    assert s.block_dir == Path("/srv/block")


@pytest.mark.parametrize("argv,conf", [
    (["-s", "0"], {}),
    (["-s", "70000"], {}),
    ([], {"SSH_PORT": "ssh"}),
    (["-c", "Italy"], {}),
    (["-p", "maxmind"], {}),
    ([], {"IPV6_MODE": "maybe"}),
    ([], {"BACKEND": "pf"}),
    ([], {"SSH_HITCOUNT": "20"}),
    ([], {"WORKERS": "0"}),
])
def test_invalid_values(argv, conf):
    with pytest.raises(ConfigError):
        settings_from(argv, conf)


def test_validate_config_warnings(tmp_path):
    s = Settings(countries={"US": Provider.NIRSOFT}, workers=32, timeout=2, ipv6_mode=Ipv6Mode.GEO,
                 use_blocklist=True, work_dir=tmp_path)
    s.mitigation.blacklist_timeout = 5
    warnings = validate_config(s)
    assert len(warnings) == 5
    assert any("WORKERS=32" in w for w in warnings)
    assert any("Nirsoft" in w for w in warnings)

    assert validate_config(Settings(countries={"IT": Provider.IPDENY})) == []
