"""
Structured configuration file edits for the ``config_file`` policy.

Changes are deep-merged into YAML / JSON files, or set per section in
INI-style files. The previous file is kept as ``<path>.bak`` before the first
write so that a rollback script (or ``restore_backup``) can put it back.
"""

from __future__ import annotations
import configparser
import difflib
import json
import os
import shutil
from io import StringIO
from typing import Any, Dict, Tuple

import yaml  # type: ignore

YAML_SUFFIXES = (".yaml", ".yml")
JSON_SUFFIXES = (".json",)
INI_SUFFIXES = (".ini", ".conf", ".cfg", ".service", ".timer")


class UnsupportedConfigFile(ValueError):
    pass


def deep_merge(base: Any, changes: Any) -> Any:
    if isinstance(base, dict) and isinstance(changes, dict):
        out = dict(base)
        for k, v in changes.items():
            out[k] = deep_merge(base.get(k), v)
        return out
    return changes


def unified_diff(before: str, after: str, path: str) -> str:
    diff = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"{path} (before)",
        tofile=f"{path} (after)",
    )
    return "".join(diff)


def _read_text(path: str) -> str:
    if not os.path.exists(path):
        return ""
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def _render_yaml(before_txt: str, changes: Dict[str, Any]) -> str:
    before_obj = yaml.safe_load(before_txt) if before_txt.strip() else {}
    if not isinstance(before_obj, dict):
        raise UnsupportedConfigFile("YAML document is not a mapping")
    return yaml.safe_dump(deep_merge(before_obj, changes), sort_keys=False)


def _render_json(before_txt: str, changes: Dict[str, Any]) -> str:
    before_obj = json.loads(before_txt) if before_txt.strip() else {}
    if not isinstance(before_obj, dict):
        raise UnsupportedConfigFile("JSON document is not an object")
    return json.dumps(deep_merge(before_obj, changes), ensure_ascii=False, indent=2) + "\n"


def _render_ini(before_txt: str, changes: Dict[str, Any]) -> str:
    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # type: ignore[assignment]
    parser.read_string(before_txt)
    # Expected structure {section: {key: value}}
    for section, kv in changes.items():
        if not isinstance(kv, dict):
            raise UnsupportedConfigFile(f"INI changes for section {section!r} must be a mapping")
        if section != parser.default_section and not parser.has_section(section):
            parser.add_section(section)
        for k, v in kv.items():
            parser.set(section, str(k), str(v))
    out = StringIO()
    parser.write(out)
    return out.getvalue()


def apply_config_changes(path: str, changes: Dict[str, Any], backup: bool = True) -> Tuple[str, bool]:
    """
    Merge ``changes`` into the file at ``path``.

    Returns:
        (unified diff, whether the file was written)

    Raises:
        UnsupportedConfigFile: unknown suffix or unusable document shape
        ValueError: the existing document cannot be parsed
    """
    lower = path.lower()
    before_txt = _read_text(path)
    try:
        if lower.endswith(YAML_SUFFIXES):
            after_txt = _render_yaml(before_txt, changes)
        elif lower.endswith(JSON_SUFFIXES):
            after_txt = _render_json(before_txt, changes)
        elif lower.endswith(INI_SUFFIXES):
            after_txt = _render_ini(before_txt, changes)
        else:
            raise UnsupportedConfigFile(f"unsupported file type: {path} (yaml/json/ini-like only)")
    except (yaml.YAMLError, configparser.Error) as e:
        raise ValueError(f"cannot parse {path}: {e}") from e

    diff = unified_diff(before_txt, after_txt, path)
    if before_txt == after_txt:
        return diff, False
    if backup and os.path.exists(path):
        shutil.copy2(path, f"{path}.bak")
    with open(path, "w", encoding="utf-8") as f:
        f.write(after_txt)
    return diff, True


def restore_backup(path: str) -> bool:
    """Put ``<path>.bak`` back in place. Returns False when no backup exists."""
    bak = f"{path}.bak"
    if not os.path.exists(bak):
        return False
    shutil.copy2(bak, path)
    return True
