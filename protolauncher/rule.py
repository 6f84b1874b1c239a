"""Rules are conditional allow/disallow gates attached to libraries and arguments in the
version metadata, they are evaluated against platform facts and optional features.
"""

from enum import Enum
import re

from .system import PlatformInfo

from typing import Optional, List, Dict, Any, Iterable


class Action(Enum):
    ALLOW = "allow"
    DISALLOW = "disallow"


class Rule:
    """A single rule, its action is only applied if all of its present conditions
    pass against the platform (and features) being evaluated.
    """

    __slots__ = "action", "os_name", "os_version", "os_arch", "features"

    def __init__(self, action: Action, *,
        os_name: Optional[str] = None,
        os_version: Optional[str] = None,
        os_arch: Optional[str] = None,
        features: Optional[Dict[str, bool]] = None
    ) -> None:
        self.action = action
        self.os_name = os_name
        self.os_version = os_version
        self.os_arch = os_arch
        self.features = features

    def matches(self, platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> bool:
        """Return true if every condition of this rule passes.
        """

        if self.os_name is not None and self.os_name != platform.os_name:
            return False
        if self.os_arch is not None and self.os_arch != platform.arch:
            return False
        if self.os_version is not None and re.search(self.os_version, platform.os_version) is None:
            return False

        if self.features is not None:
            for feat_name, feat_expected in self.features.items():
                if bool((features or {}).get(feat_name, False)) != feat_expected:
                    return False

        return True

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"action": self.action.value}
        rule_os = {}
        if self.os_name is not None:
            rule_os["name"] = self.os_name
        if self.os_version is not None:
            rule_os["version"] = self.os_version
        if self.os_arch is not None:
            rule_os["arch"] = self.os_arch
        if len(rule_os):
            data["os"] = rule_os
        if self.features is not None:
            data["features"] = dict(self.features)
        return data

    def __repr__(self) -> str:
        return f"<Rule {self.action.value} os: {self.os_name}/{self.os_version}/{self.os_arch}, features: {self.features}>"


def evaluate(rules: Iterable[Rule], platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> Action:
    """Compute the resulting action of a rule set. The default action is to disallow,
    then every rule whose conditions pass replaces the running action, so the last
    satisfied rule wins.
    """
    action = Action.DISALLOW
    for rule in rules:
        if rule.matches(platform, features):
            action = rule.action
    return action


def is_allowed(rules: Optional[List[Rule]], platform: PlatformInfo, features: Optional[Dict[str, bool]] = None) -> bool:
    """Shortcut used for optional rule sets, where the absence of rules allows.
    """
    return rules is None or evaluate(rules, platform, features) == Action.ALLOW


def parse_rules(rules: Any, path: str) -> List[Rule]:
    """Parse a list of rules from the metadata JSON format.
    """

    if not isinstance(rules, list):
        raise ValueError(f"{path} must be a list")

    ret = []
    for i, rule in enumerate(rules):

        if not isinstance(rule, dict):
            raise ValueError(f"{path}/{i} must be an object")

        action = rule.get("action")
        if action == "allow":
            rule_action = Action.ALLOW
        elif action == "disallow":
            rule_action = Action.DISALLOW
        else:
            raise ValueError(f"{path}/{i}/action must be 'allow' or 'disallow'")

        os_name = os_version = os_arch = None
        rule_os = rule.get("os")
        if rule_os is not None:

            if not isinstance(rule_os, dict):
                raise ValueError(f"{path}/{i}/os must be an object")

            os_name = _opt_str(rule_os, "name", f"{path}/{i}/os")
            os_version = _opt_str(rule_os, "version", f"{path}/{i}/os")
            os_arch = _opt_str(rule_os, "arch", f"{path}/{i}/os")

            if os_version is not None:
                try:
                    re.compile(os_version)
                except re.error:
                    raise ValueError(f"{path}/{i}/os/version must be a valid regex")

        features = rule.get("features")
        if features is not None:
            if not isinstance(features, dict) or not all(isinstance(v, bool) for v in features.values()):
                raise ValueError(f"{path}/{i}/features must be an object of booleans")

        ret.append(Rule(rule_action, os_name=os_name, os_version=os_version, os_arch=os_arch, features=features))

    return ret


def _opt_str(obj: dict, key: str, path: str) -> Optional[str]:
    value = obj.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{path}/{key} must be a string")
    return value
