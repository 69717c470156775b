import re

import pytest

from geoallow.mitigation import (NFT_UNITS, AttemptTracker, Verdict, ban_hit, nft_blacklist_rule, nft_rate,
                                 nft_rate_rule, nft_sets, recent_blacklist_check, recent_ssh_exceeded,
                                 recent_ssh_track)
from geoallow.models import BruteForcePolicy

POLICY = BruteForcePolicy(hitcount=3, window=10, blacklist_timeout=60)


def test_tracker_blacklists_after_hitcount():
    t = AttemptTracker(POLICY)
    assert [t.new_connection("1.2.3.4", now) for now in (0, 1, 2)] == [Verdict.ACCEPT] * 3
    assert t.new_connection("1.2.3.4", 3) is Verdict.BLACKLISTED
    assert t.new_connection("1.2.3.4", 30) is Verdict.DROP
    # Other sources are unaffected
    assert t.new_connection("5.6.7.8", 30) is Verdict.ACCEPT


def test_tracker_blacklist_expires():
    t = AttemptTracker(POLICY)
    for now in range(4):
        t.new_connection("1.2.3.4", now)
    assert t.is_blacklisted("1.2.3.4", 62)
    assert not t.is_blacklisted("1.2.3.4", 63)
    assert t.new_connection("1.2.3.4", 63) is Verdict.ACCEPT


def test_tracker_window_slides():
    t = AttemptTracker(POLICY)
    for now in (0, 1, 2, 10, 11, 12):
        assert t.new_connection("1.2.3.4", now) is Verdict.ACCEPT


def first_ban(policy, spacing):
    t = AttemptTracker(policy)
    for n in range(1, 100):
        if t.new_connection("192.0.2.1", n * spacing) is Verdict.BLACKLISTED:
            return n
    return None


@pytest.mark.parametrize("hitcount,window", [(3, 10), (5, 60), (1, 1), (19, 3600)])
def test_renderings_ban_on_the_same_connection_as_the_tracker(hitcount, window):
    policy = BruteForcePolicy(hitcount=hitcount, window=window, blacklist_timeout=60)
    # Back-to-back attempts, all inside one window
    banned_at = first_ban(policy, spacing=window / 1000)
    assert banned_at == ban_hit(policy)

    exceeded = recent_ssh_exceeded(policy, 22)
    assert int(exceeded[exceeded.index("--hitcount") + 1]) == banned_at
    assert exceeded[exceeded.index("--seconds") + 1] == str(window)

    rule = nft_rate_rule(policy, 4, 22, "X: ")
    rate, unit, burst = re.search(r"limit rate over (\d+)/(\w+) burst (\d+) packets", rule).groups()
    assert int(burst) + 1 == banned_at
    assert int(rate) * window == hitcount * dict(NFT_UNITS)[unit]


def test_attempts_slower_than_the_window_never_ban():
    policy = BruteForcePolicy(hitcount=3, window=10, blacklist_timeout=60)
    assert first_ban(policy, spacing=4) is None


@pytest.mark.parametrize("hitcount,window,expected", [
    (10, 10, (1, "second")),
    (3, 60, (3, "minute")),
    (5, 1, (5, "second")),
    (4, 3600, (4, "hour")),
])
def test_nft_rate(hitcount, window, expected):
    assert nft_rate(BruteForcePolicy(hitcount=hitcount, window=window)) == expected


def test_nft_sets_carry_timeouts():
    v4, blacklist_v4 = nft_sets(BruteForcePolicy(), 4)
    assert v4 == "set ssh_rate_v4 { type ipv4_addr; flags dynamic,timeout; timeout 10s; }"
    assert "timeout 3600s" in blacklist_v4
    assert "ipv6_addr" in nft_sets(BruteForcePolicy(), 6)[1]


def test_nft_rules():
    rule = nft_rate_rule(BruteForcePolicy(), 6, 2222, "SSH BRUTEFORCE: ")
    assert rule.startswith("tcp dport 2222 ct state new update @ssh_rate_v6 { ip6 saddr limit rate over 1/second")
    assert "add @ssh_blacklist_v6 { ip6 saddr }" in rule
    assert rule.endswith('log prefix "SSH BRUTEFORCE: " drop')
    assert nft_blacklist_rule(4, "X: ") == 'ip saddr @ssh_blacklist_v4 log prefix "X: " drop'


def test_recent_matches():
    assert recent_ssh_track(2222)[:4] == ["-p", "tcp", "--dport", "2222"]
    exceeded = recent_ssh_exceeded(POLICY, 2222)
    assert exceeded[-4:] == ["--seconds", "10", "--hitcount", "4"]
    assert recent_blacklist_check(POLICY)[-2:] == ["--seconds", "60"]
