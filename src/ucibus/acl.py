"""Topic-pattern access control for bus publish/subscribe.

Decision order for a caller:

    allow_all            -> allow
    for role in roles:   (caller's order)
        any deny match   -> reject, stop
        any allow match  -> allow, stop
    no decision          -> reject

Patterns are MQTT-style: `+` matches exactly one segment, `#` (last segment
only) matches everything from there on, including nothing at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from ucibus.errors import AuthorizationError

logger = logging.getLogger("ucibus.acl")

Action = Literal["publish", "subscribe"]
ACTIONS: tuple[str, ...] = ("publish", "subscribe")


# ---------------------------------------------------------------------------
# Pattern matching
# ---------------------------------------------------------------------------

def topic_matches(pattern: str, topic: str) -> bool:
    """True when topic falls under pattern."""
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")

    for i, part in enumerate(pattern_parts):
        if part == "#":
            # only legal as the final segment
            return i == len(pattern_parts) - 1
        if i >= len(topic_parts):
            return False
        if part != "+" and part != topic_parts[i]:
            return False

    return len(pattern_parts) == len(topic_parts)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TopicRule:
    pattern: str
    actions: frozenset[str]

    def matches(self, topic: str, action: str) -> bool:
        return action in self.actions and topic_matches(self.pattern, topic)


@dataclass
class AccessRule:
    """Allow/deny lists for one role."""

    role: str
    allow: list[TopicRule] = field(default_factory=list)
    deny: list[TopicRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> AccessRule:
        return cls(
            role=d["role"],
            allow=[_rule_from_dict(r) for r in d.get("allow", [])],
            deny=[_rule_from_dict(r) for r in d.get("deny", [])],
        )

    def decide(self, topic: str, action: str) -> bool | None:
        """True/False when this role decides, None to defer to the next role."""
        if any(r.matches(topic, action) for r in self.deny):
            return False
        if any(r.matches(topic, action) for r in self.allow):
            return True
        return None


def _rule_from_dict(d: dict[str, Any]) -> TopicRule:
    # "action" is accepted as an alias of "actions"
    actions = d.get("actions", d.get("action", []))
    if isinstance(actions, str):
        actions = [actions]
    unknown = set(actions) - set(ACTIONS)
    if unknown:
        msg = f"unknown ACL action(s) {sorted(unknown)} for topic {d.get('topic')!r}"
        raise ValueError(msg)
    return TopicRule(pattern=d["topic"], actions=frozenset(actions))


@dataclass
class Caller:
    username: str
    roles: list[str] = field(default_factory=list)
    allow_all: bool = False


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------

def authorize(caller: Caller, topic: str, action: str, rules: dict[str, AccessRule]) -> bool:
    """Decide whether caller may perform action on topic."""
    if caller.allow_all:
        return True
    for role in caller.roles:
        rule = rules.get(role)
        if rule is None:
            continue
        decision = rule.decide(topic, action)
        if decision is not None:
            return decision
    return False


class AccessControl:
    """Role rules plus the known callers (no credentials are kept here)."""

    def __init__(self, rules: list[AccessRule] | None = None, users: dict[str, Caller] | None = None) -> None:
        self.rules: dict[str, AccessRule] = {r.role: r for r in (rules or [])}
        self.users: dict[str, Caller] = dict(users or {})

    def caller(self, username: str) -> Caller:
        """Look up a configured user; unknown users get no roles."""
        return self.users.get(username) or Caller(username=username)

    def is_allowed(self, caller: Caller, topic: str, action: str) -> bool:
        allowed = authorize(caller, topic, action, self.rules)
        if not allowed:
            logger.debug("denied %s %s on %s", caller.username, action, topic)
        return allowed

    def check(self, caller: Caller, topic: str, action: str) -> None:
        """Raise AuthorizationError unless the caller is allowed."""
        if not self.is_allowed(caller, topic, action):
            raise AuthorizationError(caller.username, topic, action)


# Built-in rules, used when ucibus.toml has no [[acl]] table.
DEFAULT_ACL: list[dict[str, Any]] = [
    {
        "role": "admin",
        "allow": [{"topic": "#", "actions": ["publish", "subscribe"]}],
    },
    {
        "role": "internal",
        "allow": [
            {"topic": "config/#", "actions": ["publish", "subscribe"]},
            {"topic": "system/#", "actions": ["publish", "subscribe"]},
            {"topic": "commands/#", "actions": ["publish", "subscribe"]},
        ],
    },
    {
        "role": "client",
        "allow": [
            {"topic": "config/+/+/+", "actions": ["subscribe"]},
            {"topic": "system/status", "actions": ["subscribe"]},
            {"topic": "commands/edit", "actions": ["publish"]},
            {"topic": "commands/reload", "actions": ["publish"]},
            {"topic": "commands/validate", "actions": ["publish"]},
            {"topic": "commands/response/+", "actions": ["subscribe"]},
        ],
        "deny": [{"topic": "system/startup", "actions": ["publish"]}],
    },
]

DEFAULT_USERS: dict[str, dict[str, Any]] = {
    "admin": {"roles": ["admin"], "allow_all": True},
    "client": {"roles": ["client"], "allow_all": False},
    "uci_internal": {"roles": ["internal"], "allow_all": True},
}


def load_acl(acl: list[dict[str, Any]] | None = None, users: dict[str, dict[str, Any]] | None = None) -> AccessControl:
    """Build an AccessControl from plain dicts (as found in ucibus.toml)."""
    acl_dicts = DEFAULT_ACL if acl is None else acl
    user_dicts = DEFAULT_USERS if users is None else users
    return AccessControl(
        rules=[AccessRule.from_dict(d) for d in acl_dicts],
        users={
            name: Caller(
                username=name,
                roles=list(u.get("roles", [])),
                allow_all=bool(u.get("allow_all", False)),
            )
            for name, u in user_dicts.items()
        },
    )
