from edge_proxy.proxy.matching import (
    MatchMode,
    MatchRule,
    first_match,
    parse_rule,
    parse_rules,
)


class TestParseRule:
    def test_bare_entry_is_suffix(self):
        assert parse_rule("Example.com") == MatchRule("example.com", MatchMode.SUFFIX)

    def test_wildcard_entry_is_suffix(self):
        assert parse_rule("*.example.com") == MatchRule("example.com", MatchMode.SUFFIX)

    def test_exact_prefix(self):
        assert parse_rule("=api.example.com") == MatchRule(
            "api.example.com", MatchMode.EXACT
        )

    def test_substring_prefix(self):
        assert parse_rule("~gov") == MatchRule("gov", MatchMode.SUBSTRING)

    def test_substring_downgraded_in_allow_lists(self):
        assert parse_rule("~gov", allow_substring=False) == MatchRule(
            "gov", MatchMode.SUFFIX
        )

    def test_network_entry(self):
        assert parse_rule("10.0.0.0/8") == MatchRule("10.0.0.0/8", MatchMode.NETWORK)

    def test_invalid_network_is_dropped(self):
        assert parse_rule("10.0.0.0/99") is None

    def test_blank_entries_are_dropped(self):
        assert parse_rules(["", "  ", "example.com"]) == (
            MatchRule("example.com", MatchMode.SUFFIX),
        )


class TestMatchRule:
    def test_suffix_matches_exact_and_subdomains(self):
        rule = MatchRule("example.com")
        assert rule.matches("example.com")
        assert rule.matches("www.example.com")
        assert rule.matches("WWW.EXAMPLE.COM")
        assert not rule.matches("badexample.com")
        assert not rule.matches("example.com.evil.net")

    def test_exact_does_not_match_subdomains(self):
        rule = MatchRule("example.com", MatchMode.EXACT)
        assert rule.matches("example.com")
        assert not rule.matches("www.example.com")

    def test_substring_over_matches(self):
        rule = MatchRule("gov", MatchMode.SUBSTRING)
        assert rule.matches("whitehouse.gov")
        # documented over-matching of the aggressive mode
        assert rule.matches("governance.example.com")

    def test_network_matches_addresses(self):
        rule = MatchRule("10.0.0.0/8", MatchMode.NETWORK)
        assert rule.matches("10.20.30.40")
        assert not rule.matches("11.0.0.1")
        assert not rule.matches("not-an-ip")

    def test_empty_value_never_matches(self):
        assert not MatchRule("example.com").matches(None)
        assert not MatchRule("example.com").matches("")

    def test_str_round_trips_entry_syntax(self):
        assert str(MatchRule("a.com", MatchMode.EXACT)) == "=a.com"
        assert str(MatchRule("gov", MatchMode.SUBSTRING)) == "~gov"
        assert str(MatchRule("a.com")) == "a.com"


def test_first_match_returns_first_hit():
    rules = parse_rules(["=other.com", "example.com", "~exam"])
    assert first_match(rules, "www.example.com") == MatchRule("example.com")
    assert first_match(rules, "nothing.net") is None
