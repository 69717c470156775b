import ipaddress

import pytest

from conftest import RIPE_DATA, FakeFetcher, ipdeny_pages
from geoallow.acquire import acquire, write_country_lists
from geoallow.errors import IntegrityError, InvariantError
from geoallow.models import CountryRanges, Provider
from geoallow.providers import RIPE_MD5_URL, RIPE_URL, make_clients


def run_acquire(fetcher, countries, workers=4):
    return acquire(countries, make_clients(fetcher, countries), workers=workers)


def test_results_are_sorted_by_country(fetcher):
    results = run_acquire(fetcher, {"IT": Provider.IPDENY, "FR": Provider.IPDENY})
    assert [r.country for r in results] == ["FR", "IT"]


def test_partial_failure_skips_country(caplog):
    fetcher = FakeFetcher(ipdeny_pages("it"))
    results = run_acquire(fetcher, {"IT": Provider.IPDENY, "FR": Provider.IPDENY})
    assert [r.country for r in results] == ["IT"]
    assert "Skipping FR" in caplog.text
    assert "1 of 2 countries failed: FR" in caplog.text


def test_every_country_failing_aborts():
    with pytest.raises(InvariantError, match="preserve the existing firewall rules"):
        run_acquire(FakeFetcher(), {"IT": Provider.IPDENY, "FR": Provider.IPDENY}, workers=1)


def test_bulk_provider_failure_propagates():
    fetcher = FakeFetcher(ipdeny_pages("it"))
    fetcher.add(RIPE_URL, RIPE_DATA)
    fetcher.add(RIPE_MD5_URL, "MD5 = 00\n")
    with pytest.raises(IntegrityError):
        run_acquire(fetcher, {"IT": Provider.IPDENY, "DE": Provider.RIPE})
    # No per-country work was scheduled
    assert not any("ipdeny" in url for url in fetcher.requested)


def test_write_country_lists_replaces_previous_run(tmp_path):
    allow_dir = tmp_path / "allow"
    allow_dir.mkdir()
    (allow_dir / "de.list.v4").write_text("1.2.3.0/24\n")
    (allow_dir / "keep.txt").write_text("x\n")

    results = [
        CountryRanges("AU", Provider.NIRSOFT,
                      v4_ranges=[(ipaddress.IPv4Address("1.0.0.0"), ipaddress.IPv4Address("1.0.0.255"))]),
        CountryRanges("IT", Provider.IPDENY, v4=[ipaddress.ip_network("2.32.0.0/14")],
                      v6=[ipaddress.ip_network("2001:b00::/29")]),
    ]
    assert write_country_lists(results, allow_dir) == 3

    assert sorted(p.name for p in allow_dir.iterdir()) == ["au.list.v4", "it.list.v4", "it.list.v6", "keep.txt"]
    assert (allow_dir / "au.list.v4").read_text() == "1.0.0.0 - 1.0.0.255\n"
    assert (allow_dir / "it.list.v6").read_text() == "2001:b00::/29\n"
