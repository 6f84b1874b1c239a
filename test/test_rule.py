import pytest

from protolauncher.rule import Action, Rule, evaluate, is_allowed, parse_rules
from protolauncher.system import PlatformInfo


LINUX = PlatformInfo("linux", "6.1.0", "x86_64", 64)
WINDOWS_10 = PlatformInfo("windows", "10.0.19045", "x86_64", 64)
OSX = PlatformInfo("osx", "14.2", "arm64", 64)


def test_empty_rules_disallow():
    assert evaluate([], LINUX) == Action.DISALLOW
    assert not is_allowed([], LINUX)


def test_absent_rules_allow():
    assert is_allowed(None, LINUX)


def test_last_satisfied_rule_wins():

    rules = parse_rules([
        {"action": "allow"},
        {"action": "disallow", "os": {"name": "osx"}}
    ], "rules")

    assert evaluate(rules, LINUX) == Action.ALLOW
    assert evaluate(rules, WINDOWS_10) == Action.ALLOW
    assert evaluate(rules, OSX) == Action.DISALLOW


def test_os_only_allow():

    rules = parse_rules([{"action": "allow", "os": {"name": "osx"}}], "rules")
    assert evaluate(rules, OSX) == Action.ALLOW
    assert evaluate(rules, LINUX) == Action.DISALLOW


def test_os_version_regex():

    rules = parse_rules([{"action": "allow", "os": {"name": "windows", "version": "^10\\."}}], "rules")
    assert is_allowed(rules, WINDOWS_10)
    assert not is_allowed(rules, PlatformInfo("windows", "6.1.7601", "x86_64", 64))

    # The pattern is searched, not fully matched.
    rules = parse_rules([{"action": "allow", "os": {"version": "19045"}}], "rules")
    assert is_allowed(rules, WINDOWS_10)


def test_os_arch():

    rules = parse_rules([{"action": "allow", "os": {"arch": "x86"}}], "rules")
    assert not is_allowed(rules, LINUX)
    assert is_allowed(rules, PlatformInfo("windows", "10.0", "x86", 32))


def test_features():

    rules = parse_rules([{"action": "allow", "features": {"has_custom_resolution": True}}], "rules")
    assert not is_allowed(rules, LINUX)
    assert not is_allowed(rules, LINUX, {"has_custom_resolution": False})
    assert is_allowed(rules, LINUX, {"has_custom_resolution": True})

    # A missing feature is false.
    rules = parse_rules([{"action": "allow", "features": {"is_demo_user": False}}], "rules")
    assert is_allowed(rules, LINUX, {})


def test_all_conditions_must_pass():

    rule = Rule(Action.ALLOW, os_name="linux", os_arch="x86_64", features={"is_demo_user": True})
    assert not rule.matches(LINUX)
    assert rule.matches(LINUX, {"is_demo_user": True})
    assert not rule.matches(OSX, {"is_demo_user": True})


def test_to_dict():
    rules = parse_rules([{"action": "disallow", "os": {"name": "osx", "version": "^14"}}], "rules")
    assert rules[0].to_dict() == {"action": "disallow", "os": {"name": "osx", "version": "^14"}}


@pytest.mark.parametrize("raw", [
    {},
    [{"action": "maybe"}],
    [{"action": "allow", "os": "linux"}],
    [{"action": "allow", "os": {"version": "("}}],
    [{"action": "allow", "features": {"is_demo_user": "yes"}}],
])
def test_invalid_rules(raw):
    with pytest.raises(ValueError):
        parse_rules(raw, "rules")
