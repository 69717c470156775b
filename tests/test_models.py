import pytest

from geoallow.errors import ConfigError
from geoallow.models import Ipv6Mode, Provider, Settings, normalize_country, parse_country_selection


def test_simple_list_uses_default_provider():
    sel = parse_country_selection("it, fr", Provider.IPDENY)
    assert sel == {"IT": Provider.IPDENY, "FR": Provider.IPDENY}


def test_advanced_syntax_mixes_providers():
    sel = parse_country_selection("ipdeny:IT,FR;ripe:DE;nirsoft:US", Provider.IPDENY)
    assert sel == {"IT": Provider.IPDENY, "FR": Provider.IPDENY,
                   "DE": Provider.RIPE, "US": Provider.NIRSOFT}


def test_duplicate_country_same_provider_collapses():
    assert parse_country_selection("IT,IT;ipdeny:IT", Provider.IPDENY) == {"IT": Provider.IPDENY}


def test_country_bound_to_two_providers_is_rejected():
    with pytest.raises(ConfigError, match="IT"):
        parse_country_selection("ipdeny:IT;ripe:IT", Provider.IPDENY)


@pytest.mark.parametrize("text", ["", "  ", ",;", "ITA", "1T", "bogus:IT"])
def test_invalid_selection(text):
    with pytest.raises(ConfigError):
        parse_country_selection(text, Provider.IPDENY)


def test_normalize_country():
    assert normalize_country(" de ") == "DE"
    with pytest.raises(ConfigError):
        normalize_country("D3")


def test_provider_parse():
    assert Provider.parse(" RIPE ") is Provider.RIPE
    with pytest.raises(ConfigError, match="valid: ipdeny, ripe, nirsoft"):
        Provider.parse("maxmind")


def test_settings_paths_and_modes(tmp_path):
    s = Settings(countries={"IT": Provider.RIPE, "FR": Provider.IPDENY}, work_dir=tmp_path)
    assert s.allow_dir == tmp_path / "allow"
    assert s.block_dir == tmp_path / "block"
    assert not s.geo_ipv6

    s.blocklist_dir = tmp_path / "elsewhere"
    s.ipv6_mode = Ipv6Mode.GEO
    assert s.block_dir == tmp_path / "elsewhere"
    assert s.geo_ipv6
