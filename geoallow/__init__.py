"""
geoallow: country allowlist firewall for nftables and iptables/ipset hosts.

- Downloads per-country IP ranges (ipdeny, RIPE NCC, Nirsoft)
- Merges them into a minimal CIDR cover, optionally minus a blocklist
- Compiles a default-deny ruleset with SSH brute-force mitigation
- Applies it atomically (nftables) or via idempotent restore files (iptables)
"""

__version__ = "1.0.0"
