#!/usr/bin/env python3
"""
Conflict sheet - plain-text conflict presentation for the CLI.

When a sync halts on conflicts, the CLI writes a sheet listing each one. The
user (or an agent) adds a decision line under every conflict and re-runs the
command with --sheet. Decoding validates the sheet strictly: a conflict without
a decision is reported, never defaulted.

Format:
    #CONFLICTS:v1:op=pull:count=2
    [Name|en|0] kind=both-added
      base: <absent>
      local: Bob
      remote: Robert
    > remote
    [Save|en|0] kind=both-modified
      base: Save
      local: Save now
      remote: Store
    > custom: Save changes
    ---

Decision lines: '> local', '> remote' or '> custom: <text>'.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .merge import Conflict
from .resolver import Prompt, TakeCustom, TakeLocal, TakeRemote
from .snapshot import Entry, EntryId

ABSENT = "<absent>"


def format_id(entry_id: EntryId) -> str:
    return f"{entry_id.key}|{entry_id.language_code}|{entry_id.occurrence_index}"


def parse_id(text: str) -> Optional[EntryId]:
    parts = text.rsplit("|", 2)
    if len(parts) != 3 or not parts[2].isdigit():
        return None
    return EntryId(parts[0], parts[1], int(parts[2]))


def _escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _unescape(text: str) -> str:
    result = []
    i = 0
    while i < len(text):
        if text[i] == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            result.append("\n" if nxt == "n" else nxt)
            i += 2
        else:
            result.append(text[i])
            i += 1
    return "".join(result)


@dataclass
class SheetError:
    """Structured sheet error with a fix hint."""
    line_num: int
    error_type: str
    message: str
    suggestion: str

    def to_dict(self) -> dict:
        return {
            "line": self.line_num,
            "type": self.error_type,
            "message": self.message,
            "fix": self.suggestion,
        }


class ConflictSheetEncoder:
    """Render unresolved conflicts as a conflict sheet."""

    HEADER_TEMPLATE = "#CONFLICTS:v1:op={op}:count={count}"

    def encode(self, conflicts: list[Conflict], operation: str = "sync") -> str:
        lines = [self.HEADER_TEMPLATE.format(op=operation, count=len(conflicts))]
        for conflict in conflicts:
            lines.append(f"[{_escape(format_id(conflict.id))}] kind={conflict.kind.value}")
            lines.append(f"  base: {self._value(conflict.base)}")
            lines.append(f"  local: {self._value(conflict.ours)}")
            lines.append(f"  remote: {self._value(conflict.theirs)}")
            lines.append(">")
        lines.append("---")
        return "\n".join(lines) + "\n"

    def _value(self, entry: Optional[Entry]) -> str:
        if entry is None:
            return ABSENT
        return _escape(entry.value)


class ConflictSheetDecoder:
    """Turn a filled-in sheet back into a Prompt strategy."""

    HEADER_PATTERN = re.compile(r"#CONFLICTS:v1:op=([\w-]+):count=(\d+)")
    CONFLICT_PATTERN = re.compile(r"^\[(.+)\](?:\s+kind=\S+)?\s*$")
    DECISION_PATTERN = re.compile(r"^>\s*(local|remote|custom:(.*))?\s*$")

    def decode(self, content: str, conflicts: list[Conflict]) -> tuple[Prompt, list[SheetError]]:
        """
        Parse decisions and validate them against the open conflicts.

        Args:
            content: Sheet text
            conflicts: The unresolved conflicts the sheet is answering

        Returns:
            Tuple of (Prompt with every decision found, list of SheetError).
            The Prompt may be partial; resolving with it then fails loudly.
        """
        errors: list[SheetError] = []
        lines = content.strip("\n").split("\n")
        by_id = {c.id: c for c in conflicts}

        if not lines or not lines[0].startswith("#CONFLICTS:") or not self.HEADER_PATTERN.match(lines[0]):
            errors.append(SheetError(
                line_num=1,
                error_type="MISSING_HEADER",
                message=f"Invalid header: '{lines[0][:50] if lines else ''}'",
                suggestion="First line must be: #CONFLICTS:v1:op=<operation>:count=<n>",
            ))

        if "---" not in (line.strip() for line in lines):
            errors.append(SheetError(
                line_num=len(lines),
                error_type="MISSING_DELIMITER",
                message="Missing end delimiter '---'",
                suggestion="Sheet must end with a line containing only '---'",
            ))

        decisions = {}
        current: Optional[EntryId] = None
        for line_num, raw in enumerate(lines[1:], 2):
            line = raw.rstrip()
            if line.strip() == "---":
                break

            match = self.CONFLICT_PATTERN.match(line)
            if match:
                current = parse_id(_unescape(match.group(1)))
                if current is None or current not in by_id:
                    errors.append(SheetError(
                        line_num=line_num,
                        error_type="UNKNOWN_CONFLICT",
                        message=f"No open conflict for '{match.group(1)}'",
                        suggestion="Do not edit or add [id] lines; regenerate the sheet if needed",
                    ))
                    current = None
                continue

            if not line.startswith(">"):
                continue

            match = self.DECISION_PATTERN.match(line)
            if not match:
                errors.append(SheetError(
                    line_num=line_num,
                    error_type="MALFORMED_DECISION",
                    message=f"Cannot read decision: '{line[:60]}'",
                    suggestion="Use '> local', '> remote' or '> custom: <text>'",
                ))
                continue
            if current is None or match.group(1) is None:
                continue
            if current in decisions:
                errors.append(SheetError(
                    line_num=line_num,
                    error_type="DUPLICATE_DECISION",
                    message=f"Second decision for {current}",
                    suggestion="Keep exactly one decision line per conflict",
                ))
                continue

            choice = match.group(1)
            if choice == "local":
                decisions[current] = TakeLocal()
            elif choice == "remote":
                decisions[current] = TakeRemote()
            else:
                conflict = by_id[current]
                keep_comment = conflict.theirs or conflict.ours
                decisions[current] = TakeCustom(
                    value=_unescape(match.group(2).strip()),
                    comment=keep_comment.comment if keep_comment else None,
                )

        for conflict in conflicts:
            if conflict.id not in decisions:
                errors.append(SheetError(
                    line_num=0,
                    error_type="MISSING_DECISION",
                    message=f"No decision for {conflict.id}",
                    suggestion=f"Add '> local', '> remote' or '> custom: <text>' under [{format_id(conflict.id)}]",
                ))

        return Prompt(decisions=decisions), errors
