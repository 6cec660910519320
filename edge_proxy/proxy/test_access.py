import pytest

from edge_proxy.config import ProxyConfig
from edge_proxy.proxy.access import (
    ALLOWED,
    AccessController,
    Denied,
    is_private_address,
)
from edge_proxy.proxy.errors import AccessDeniedError, ProtocolNotAllowedError
from edge_proxy.proxy.matching import parse_rules
from edge_proxy.proxy.target import UpstreamTarget, resolve_target


def _target(raw: str) -> UpstreamTarget:
    return resolve_target(raw, "", "https")


def _evaluate(config: ProxyConfig, raw: str, client_ip=None):
    return AccessController(config).evaluate(_target(raw), client_ip)


class TestIsPrivateAddress:
    @pytest.mark.parametrize(
        "host",
        [
            "127.0.0.1",
            "10.0.0.1",
            "172.16.0.1",
            "172.31.255.255",
            "192.168.1.5",
            "169.254.1.1",
            "0.0.0.0",
            "::1",
            "::",
            "fe80::1",
            "fc00::1",
            "fd00::1",
            "fd12::1",
            "fdff:ffff::1",
            "febf::1",
            "::ffff:192.168.1.1",
            "[::1]",
        ],
    )
    def test_private(self, host):
        assert is_private_address(host)

    @pytest.mark.parametrize(
        "host",
        [
            "93.184.216.34",
            "172.32.0.1",
            "8.8.8.8",
            "2001:db8::1",
            "fe00::1",
            "example.com",
            "localhost",
        ],
    )
    def test_public_or_hostname(self, host):
        assert not is_private_address(host)


class TestAccessController:
    def test_public_target_allowed(self, proxy_config):
        decision = _evaluate(proxy_config, "example.com/page")
        assert decision is ALLOWED
        decision.raise_for_denial()

    def test_non_http_scheme_is_protocol_denial(self, proxy_config):
        decision = _evaluate(proxy_config, "ftp://example.com/file")
        assert isinstance(decision, Denied)
        assert decision.stage == "protocol"
        assert decision.status_code == 400
        with pytest.raises(ProtocolNotAllowedError):
            decision.raise_for_denial()

    def test_default_block_list_covers_localhost(self, proxy_config):
        decision = _evaluate(proxy_config, "localhost/admin")
        assert decision.stage == "blocked_domain"
        with pytest.raises(AccessDeniedError):
            decision.raise_for_denial()

    def test_blocked_suffix_matches_subdomain(self, proxy_config):
        config = proxy_config.with_overrides(blocked_domains=parse_rules(["evil.com"]))
        assert _evaluate(config, "cdn.evil.com/x").stage == "blocked_domain"
        assert _evaluate(config, "notevil.com/x") is ALLOWED

    def test_block_list_wins_over_allow_list(self, proxy_config):
        config = proxy_config.with_overrides(
            blocked_domains=parse_rules(["bad.example.com"]),
            allowed_domains=parse_rules(["example.com"]),
        )
        assert _evaluate(config, "bad.example.com/").stage == "blocked_domain"
        assert _evaluate(config, "good.example.com/") is ALLOWED

    def test_allow_list_rejects_other_domains(self, proxy_config):
        config = proxy_config.with_overrides(allowed_domains=parse_rules(["example.com"]))
        decision = _evaluate(config, "other.org/")
        assert decision.stage == "allowed_domain"
        assert decision.status_code == 403

    def test_substring_rule_over_matches(self, proxy_config):
        config = proxy_config.with_overrides(blocked_domains=parse_rules(["~gov"]))
        assert _evaluate(config, "governance.example.com/").stage == "blocked_domain"

    def test_exact_rule_spares_subdomains(self, proxy_config):
        config = proxy_config.with_overrides(blocked_domains=parse_rules(["=example.com"]))
        assert _evaluate(config, "example.com/").stage == "blocked_domain"
        assert _evaluate(config, "www.example.com/") is ALLOWED

    @pytest.mark.parametrize(
        "raw",
        ["example.com/.env", "example.com/app/.git/config", "example.com/WP-ADMIN/", "example.com/a/%2e%2e/b"],
    )
    def test_dangerous_paths(self, proxy_config, raw):
        assert _evaluate(proxy_config, raw).stage == "blocked_path"

    @pytest.mark.parametrize(
        "host",
        [
            "192.168.1.5",
            "10.0.0.1",
            "169.254.1.1",
            "[fd00::1]",
            "[fd12::1]",
            # shorthand IPv4 forms of loopback and private addresses
            "2130706433",
            "127.1",
            "0x7f000001",
            "0177.1",
            "10.1",
            "0xc0.0xa8.1.5",
        ],
    )
    def test_private_targets(self, proxy_config, host):
        config = proxy_config.with_overrides(blocked_domains=())
        decision = _evaluate(config, f"http://{host}/")
        assert decision.stage == "private_address"

    def test_loopback_literal_denied_without_block_list(self, proxy_config):
        config = proxy_config.with_overrides(blocked_domains=())
        assert _evaluate(config, "127.0.0.1/").stage == "private_address"

    def test_public_ip_allowed(self, proxy_config):
        assert _evaluate(proxy_config, "93.184.216.34/") is ALLOWED

    def test_blocked_client_ip(self, proxy_config):
        config = proxy_config.with_overrides(
            blocked_client_ips=parse_rules(["=203.0.113.7", "198.51.100.0/24"])
        )
        assert _evaluate(config, "example.com/", "203.0.113.7").stage == "blocked_client"
        assert _evaluate(config, "example.com/", "198.51.100.20").stage == "blocked_client"
        assert _evaluate(config, "example.com/", "203.0.113.8") is ALLOWED

    def test_allowed_client_ips(self, proxy_config):
        config = proxy_config.with_overrides(allowed_client_ips=parse_rules(["10.1.0.0/16"]))
        assert _evaluate(config, "example.com/", "10.1.2.3") is ALLOWED
        assert _evaluate(config, "example.com/", "10.2.0.1").stage == "allowed_client"
        assert _evaluate(config, "example.com/", None).stage == "allowed_client"

    def test_first_failing_stage_wins(self, proxy_config):
        # protocol runs before the domain block list
        assert _evaluate(proxy_config, "ftp://localhost/.env").stage == "protocol"
        # domain block list runs before the path check
        assert _evaluate(proxy_config, "localhost/.env").stage == "blocked_domain"

    def test_decision_is_deterministic(self, proxy_config):
        controller = AccessController(proxy_config)
        target = _target("example.com/.git")
        assert controller.evaluate(target) == controller.evaluate(target)

    def test_mixed_case_blocked_path_entry(self, proxy_config):
        config = proxy_config.with_overrides(blocked_paths=("/Admin",))
        assert _evaluate(config, "example.com/ADMIN/panel").stage == "blocked_path"
        assert _evaluate(config, "example.com/admin").stage == "blocked_path"

    def test_evaluate_target_skips_client_checks(self, proxy_config):
        config = proxy_config.with_overrides(allowed_client_ips=parse_rules(["10.1.0.0/16"]))
        controller = AccessController(config)
        assert controller.evaluate_target(_target("example.com/")) is ALLOWED
        assert controller.evaluate_target(_target("http://127.1/")).stage == "blocked_domain"
