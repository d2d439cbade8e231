"""Persistent storage for "always allow" / "always deny" tool permission rules.

Rules live in the workspace's ``.claude/settings.local.json`` under
``permissions.allow`` and ``permissions.deny``, which the assistant CLI
also reads:

- ``Bash(<command>:*)`` matches every invocation of a shell command
- ``Tool(*)`` matches a tool everywhere
- ``Tool(<workspace>/**)`` matches a tool anywhere inside the workspace
- ``Tool(<path>)`` matches a tool on one path

Deny rules win over allow rules.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from tandem.engine.permission_arbiter import PermissionRule
from tandem.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SETTINGS_DIRNAME = ".claude"
FILENAME = "settings.local.json"
ALLOW = "allow"
DENY = "deny"
RULE_KINDS = (ALLOW, DENY)


def _first_word(tool_input: dict[str, Any] | None) -> str:
    command = str((tool_input or {}).get("command") or "").strip()
    return command.split(" ")[0] if command else ""


def rule_pattern(rule: PermissionRule) -> str:
    """Render a rule in the settings file's pattern syntax."""
    if rule.tool == "Bash":
        return f"Bash({_first_word(rule.tool_input)}:*)"
    if rule.path:
        return f"{rule.tool}({rule.path})"
    return f"{rule.tool}(*)"


def candidate_patterns(
    tool: str,
    path: str,
    tool_input: dict[str, Any] | None,
    workspace: str,
) -> list[str]:
    """Every pattern that would match this call."""
    if tool == "Bash":
        return [f"Bash({_first_word(tool_input)}:*)"]
    patterns = [f"{tool}(*)", f"{tool}({workspace.rstrip('/')}/**)"]
    if path:
        patterns.append(f"{tool}({path})")
    return patterns


class PermissionPolicyStore:
    """Load and save permission rules per workspace."""

    def settings_path(self, workspace: str | Path) -> Path:
        return Path(workspace) / SETTINGS_DIRNAME / FILENAME

    def load(self, workspace: str | Path, kind: str = ALLOW) -> list[str]:
        """Return one rule list of a workspace (empty when unreadable)."""
        return self._patterns(self._load_file(self.settings_path(workspace)), kind)

    def rules(self, workspace: str | Path) -> dict[str, list[str]]:
        """Both rule lists, keyed "allow" and "deny"."""
        data = self._load_file(self.settings_path(workspace))
        return {kind: self._patterns(data, kind) for kind in RULE_KINDS}

    def lookup(
        self,
        workspace: str,
        tool: str,
        path: str = "",
        tool_input: dict[str, Any] | None = None,
    ) -> bool | None:
        """False if a deny rule matches, True if an allow rule does, else None."""
        rules = self.rules(workspace)
        candidates = candidate_patterns(tool, path, tool_input, workspace)
        if any(p in rules[DENY] for p in candidates):
            return False
        if any(p in rules[ALLOW] for p in candidates):
            return True
        return None

    def is_allowed(
        self,
        workspace: str,
        tool: str,
        path: str = "",
        tool_input: dict[str, Any] | None = None,
    ) -> bool:
        return self.lookup(workspace, tool, path, tool_input) is True

    def add_rule(self, rule: PermissionRule) -> str:
        """Append the rule's pattern to its workspace allow or deny list."""
        settings_file = self.settings_path(rule.workspace)
        data = self._load_file(settings_file)
        permissions = data.setdefault("permissions", {})
        kind = DENY if rule.deny else ALLOW
        patterns = permissions.setdefault(kind, [])
        pattern = rule_pattern(rule)
        if pattern not in patterns:
            patterns.append(pattern)
            atomic_write_json(settings_file, data)
            logger.info("Saved always-%s rule %s to %s", kind, pattern, settings_file)
        return pattern

    def remove_pattern(self, workspace: str | Path, pattern: str) -> bool:
        """Remove a pattern from both lists. Returns True if it was present."""
        settings_file = self.settings_path(workspace)
        data = self._load_file(settings_file)
        permissions = data.get("permissions") or {}
        removed = False
        for kind in RULE_KINDS:
            patterns = permissions.get(kind)
            if isinstance(patterns, list) and pattern in patterns:
                patterns.remove(pattern)
                removed = True
        if removed:
            atomic_write_json(settings_file, data)
            logger.info("Removed permission rule %s from %s", pattern, settings_file)
        return removed

    @staticmethod
    def _patterns(data: dict[str, Any], kind: str) -> list[str]:
        patterns = (data.get("permissions") or {}).get(kind) or []
        return [str(p) for p in patterns] if isinstance(patterns, list) else []

    @staticmethod
    def _load_file(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except (json.JSONDecodeError, OSError):
            logger.warning("Failed to load %s", path)
        return {}
