from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from ..errors import ValidationError, ValidationIssue

ACTIONS = ("delete", "warn", "mute", "ban")
TIERS = ("public", "admin", "owner")
MATCH_MODES = ("exact", "substring", "token")
# Names used by older dashboards
MATCH_MODE_ALIASES = {"contains": "substring", "similar": "token"}

PREFIX_CHARS = set("!@#$%^&*()_+-=[]{};':\"\\|,.<>/?")
MAX_PREFIX_LENGTH = 10
MAX_TEXT_LENGTH = 4096


@dataclass(frozen=True)
class CommandInfo:
    tier: str
    description: str


DEFAULT_COMMANDS: dict[str, CommandInfo] = {
    "menu": CommandInfo("public", "Show available commands"),
    "rules": CommandInfo("public", "Display group rules"),
    "info": CommandInfo("public", "Bot information"),
    "group": CommandInfo("public", "Group information"),
    "ban": CommandInfo("admin", "Ban a user from group"),
    "kick": CommandInfo("admin", "Remove user from group"),
    "add": CommandInfo("admin", "Add user to group"),
    "promote": CommandInfo("admin", "Promote user to admin"),
    "demote": CommandInfo("admin", "Demote user from admin"),
    "mute": CommandInfo("admin", "Enable admin-only mode"),
    "unmute": CommandInfo("admin", "Disable admin-only mode"),
    "clear": CommandInfo("admin", "Delete messages"),
    "setwelcome": CommandInfo("admin", "Set welcome message"),
    "setrules": CommandInfo("admin", "Set rules message"),
    "antilink": CommandInfo("admin", "Toggle anti-link protection"),
    "warn": CommandInfo("admin", "Warn a user"),
    "groups": CommandInfo("owner", "List all groups"),
}


@dataclass(frozen=True)
class WhitelistEntry:
    pattern: str
    match_mode: str = "substring"


@dataclass(frozen=True)
class AutoResponse:
    keyword: str
    response: str


@dataclass(frozen=True)
class CommandSetting:
    tier: str
    enabled: bool = True


def _default_commands() -> dict[str, CommandSetting]:
    return {name: CommandSetting(tier=info.tier) for name, info in DEFAULT_COMMANDS.items()}


@dataclass(frozen=True)
class GroupPolicy:
    """Moderation and command ruleset of one group.

    Built only from validated documents; the pipeline never re-validates it.
    """

    group_id: str
    session_id: str
    group_name: str = ""
    # Inactive groups are neither moderated nor answered
    active: bool = True
    prefix: str = "!"
    welcome_message: str = ""
    rules_message: str = ""

    anti_link_active: bool = False
    anti_link_action: str = "delete"
    whitelist: tuple[WhitelistEntry, ...] = ()

    anti_profanity_active: bool = False
    anti_profanity_action: str = "delete"
    prohibited_words: tuple[str, ...] = ()

    anti_flood_active: bool = False
    anti_flood_action: str = "warn"
    limit: int = 5
    timeframe_seconds: int = 60

    admin_only_mode: bool = False
    auto_responses: tuple[AutoResponse, ...] = ()
    active_commands: Mapping[str, CommandSetting] = field(default_factory=_default_commands)

    def command(self, name: str) -> Optional[CommandSetting]:
        return self.active_commands.get(name)

    def to_document(self) -> dict[str, Any]:
        return {
            "isActive": self.active,
            "prefix": self.prefix,
            "welcomeMessage": self.welcome_message,
            "rulesMessage": self.rules_message,
            "antiLinkActive": self.anti_link_active,
            "antiLinkAction": self.anti_link_action,
            "whitelist": [{"pattern": w.pattern, "matchMode": w.match_mode} for w in self.whitelist],
            "antiProfanityActive": self.anti_profanity_active,
            "antiProfanityAction": self.anti_profanity_action,
            "prohibitedWords": list(self.prohibited_words),
            "antiFloodActive": self.anti_flood_active,
            "antiFloodAction": self.anti_flood_action,
            "limit": self.limit,
            "timeframeSeconds": self.timeframe_seconds,
            "adminOnlyMode": self.admin_only_mode,
            "autoResponses": [{"keyword": a.keyword, "response": a.response} for a in self.auto_responses],
            "activeCommands": {
                name: {"tier": c.tier, "enabled": c.enabled} for name, c in self.active_commands.items()
            },
        }


# Document key -> (dataclass field, converter)
_SCALARS: dict[str, str] = {
    "isActive": "active",
    "prefix": "prefix",
    "welcomeMessage": "welcome_message",
    "rulesMessage": "rules_message",
    "antiLinkActive": "anti_link_active",
    "antiLinkAction": "anti_link_action",
    "antiProfanityActive": "anti_profanity_active",
    "antiProfanityAction": "anti_profanity_action",
    "antiFloodActive": "anti_flood_active",
    "antiFloodAction": "anti_flood_action",
    "limit": "limit",
    "timeframeSeconds": "timeframe_seconds",
    "adminOnlyMode": "admin_only_mode",
}
_COLLECTIONS = ("whitelist", "prohibitedWords", "autoResponses", "activeCommands")
KNOWN_KEYS = frozenset(_SCALARS) | frozenset(_COLLECTIONS)

_BOOL_KEYS = ("isActive", "antiLinkActive", "antiProfanityActive", "antiFloodActive", "adminOnlyMode")
_ACTION_KEYS = ("antiLinkAction", "antiProfanityAction", "antiFloodAction")
_TEXT_KEYS = ("welcomeMessage", "rulesMessage")


def _check_text(issues: list[ValidationIssue], path: str, value: Any, *, allow_empty: bool = True) -> None:
    if not isinstance(value, str):
        issues.append(ValidationIssue(path, "must be a string"))
    elif len(value) > MAX_TEXT_LENGTH:
        issues.append(ValidationIssue(path, f"must be at most {MAX_TEXT_LENGTH} characters"))
    elif not allow_empty and not value.strip():
        issues.append(ValidationIssue(path, "must not be empty"))


def validate_patch(patch: Any) -> list[ValidationIssue]:
    """Validate a (partial) policy document. Returns issues; empty means valid."""

    if not isinstance(patch, Mapping):
        return [ValidationIssue("$", "patch must be an object")]

    issues: list[ValidationIssue] = []
    for key in patch:
        if key not in KNOWN_KEYS:
            issues.append(ValidationIssue(f"$.{key}", "unknown field"))

    if "prefix" in patch:
        p = patch["prefix"]
        if not isinstance(p, str) or not p or len(p) > MAX_PREFIX_LENGTH or not set(p) <= PREFIX_CHARS:
            issues.append(ValidationIssue("$.prefix", "invalid prefix format"))

    for key in _TEXT_KEYS:
        if key in patch:
            _check_text(issues, f"$.{key}", patch[key])

    for key in _BOOL_KEYS:
        if key in patch and not isinstance(patch[key], bool):
            issues.append(ValidationIssue(f"$.{key}", "must be boolean"))

    for key in _ACTION_KEYS:
        if key in patch and patch[key] not in ACTIONS:
            issues.append(ValidationIssue(f"$.{key}", f"must be one of: {', '.join(ACTIONS)}"))

    for key in ("limit", "timeframeSeconds"):
        if key in patch:
            v = patch[key]
            if isinstance(v, bool) or not isinstance(v, int) or v < 1:
                issues.append(ValidationIssue(f"$.{key}", "must be a positive integer"))

    if "whitelist" in patch:
        wl = patch["whitelist"]
        if not isinstance(wl, list):
            issues.append(ValidationIssue("$.whitelist", "must be a list"))
        else:
            for i, item in enumerate(wl):
                path = f"$.whitelist[{i}]"
                if not isinstance(item, Mapping):
                    issues.append(ValidationIssue(path, "must be an object"))
                    continue
                _check_text(issues, path + ".pattern", item.get("pattern"), allow_empty=False)
                mode = item.get("matchMode", "substring")
                if MATCH_MODE_ALIASES.get(mode, mode) not in MATCH_MODES:
                    issues.append(ValidationIssue(path + ".matchMode", f"must be one of: {', '.join(MATCH_MODES)}"))

    if "prohibitedWords" in patch:
        words = patch["prohibitedWords"]
        if not isinstance(words, list):
            issues.append(ValidationIssue("$.prohibitedWords", "must be a list"))
        else:
            for i, w in enumerate(words):
                _check_text(issues, f"$.prohibitedWords[{i}]", w, allow_empty=False)

    if "autoResponses" in patch:
        responses = patch["autoResponses"]
        if not isinstance(responses, list):
            issues.append(ValidationIssue("$.autoResponses", "must be a list"))
        else:
            for i, item in enumerate(responses):
                path = f"$.autoResponses[{i}]"
                if not isinstance(item, Mapping):
                    issues.append(ValidationIssue(path, "must be an object"))
                    continue
                _check_text(issues, path + ".keyword", item.get("keyword"), allow_empty=False)
                _check_text(issues, path + ".response", item.get("response"), allow_empty=False)

    if "activeCommands" in patch:
        cmds = patch["activeCommands"]
        if not isinstance(cmds, Mapping):
            issues.append(ValidationIssue("$.activeCommands", "must be an object"))
        else:
            for name, setting in cmds.items():
                path = f"$.activeCommands.{name}"
                if name not in DEFAULT_COMMANDS:
                    issues.append(ValidationIssue(path, "unknown command"))
                    continue
                if not isinstance(setting, Mapping):
                    issues.append(ValidationIssue(path, "must be an object"))
                    continue
                if "tier" in setting and setting["tier"] not in TIERS:
                    issues.append(ValidationIssue(path + ".tier", f"must be one of: {', '.join(TIERS)}"))
                if "enabled" in setting and not isinstance(setting["enabled"], bool):
                    issues.append(ValidationIssue(path + ".enabled", "must be boolean"))

    try:
        json.dumps(patch)
    except (TypeError, ValueError):
        issues.append(ValidationIssue("$", "patch must be JSON serializable"))
    return issues


def apply_patch(policy: GroupPolicy, patch: Mapping[str, Any]) -> GroupPolicy:
    """Return a new policy with ``patch`` applied. Raises ValidationError."""

    issues = validate_patch(patch)
    if issues:
        raise ValidationError(issues)

    changes: dict[str, Any] = {_SCALARS[k]: v for k, v in patch.items() if k in _SCALARS}

    if "whitelist" in patch:
        changes["whitelist"] = tuple(
            WhitelistEntry(
                pattern=item["pattern"].strip(),
                match_mode=MATCH_MODE_ALIASES.get(item.get("matchMode", "substring"), item.get("matchMode", "substring")),
            )
            for item in patch["whitelist"]
        )
    if "prohibitedWords" in patch:
        # keep order, drop duplicates
        changes["prohibited_words"] = tuple(dict.fromkeys(w.strip() for w in patch["prohibitedWords"]))
    if "autoResponses" in patch:
        changes["auto_responses"] = tuple(
            AutoResponse(keyword=item["keyword"].strip(), response=item["response"]) for item in patch["autoResponses"]
        )
    if "activeCommands" in patch:
        merged = dict(policy.active_commands)
        for name, setting in patch["activeCommands"].items():
            current = merged.get(name) or CommandSetting(tier=DEFAULT_COMMANDS[name].tier)
            merged[name] = CommandSetting(
                tier=setting.get("tier", current.tier),
                enabled=setting.get("enabled", current.enabled),
            )
        changes["active_commands"] = merged

    return replace(policy, **changes)


def policy_from_document(
    group_id: str,
    session_id: str,
    doc: Mapping[str, Any],
    *,
    group_name: str = "",
) -> GroupPolicy:
    """Rebuild a stored policy; unknown keys from older documents are dropped."""
    known = {k: v for k, v in doc.items() if k in KNOWN_KEYS}
    if isinstance(known.get("activeCommands"), Mapping):
        known["activeCommands"] = {k: v for k, v in known["activeCommands"].items() if k in DEFAULT_COMMANDS}
    return apply_patch(GroupPolicy(group_id=group_id, session_id=session_id, group_name=group_name), known)
