from __future__ import annotations

import json
from pathlib import Path

from .errors import InputError
from .models import RewriteRule, rule_from_dict
from .rewrite import compile_rules

_BOOL_FIELDS = ("regex", "ignore_case")
_STR_FIELDS = ("find", "replace")


class RuleSetError(InputError):
    pass


def _check_rule(index: int, data: object) -> RewriteRule:
    label = f"rule {index + 1}"
    if not isinstance(data, dict):
        raise RuleSetError(f"{label}: must be an object")
    unknown = sorted(set(data) - {*_STR_FIELDS, *_BOOL_FIELDS, "selectors"})
    if unknown:
        raise RuleSetError(f"{label}: unknown keys {', '.join(unknown)}")
    for key in _STR_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, str):
            raise RuleSetError(f"{label}: {key} must be a string")
    for key in _BOOL_FIELDS:
        value = data.get(key)
        if value is not None and not isinstance(value, bool):
            raise RuleSetError(f"{label}: {key} must be true or false")
    selectors = data.get("selectors")
    if selectors is not None:
        if isinstance(selectors, str):
            selectors = [selectors]
        if not isinstance(selectors, list) or not all(isinstance(s, str) for s in selectors):
            raise RuleSetError(f"{label}: selectors must be a string or an array of strings")
        data = {**data, "selectors": selectors}
    return rule_from_dict(data)


def validate_rule_set_json(raw_json: str) -> list[RewriteRule]:
    try:
        data = json.loads(raw_json or "")
    except json.JSONDecodeError as exc:
        raise RuleSetError(f"rule set is not valid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise RuleSetError("rule set must be a JSON array of rule objects")

    rules = [_check_rule(index, entry) for index, entry in enumerate(data)]
    try:
        compile_rules(rules)
    except InputError as exc:
        raise RuleSetError(str(exc)) from exc
    return rules


def load_rule_set(path: Path) -> list[RewriteRule]:
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise RuleSetError(f"cannot read rule set {path}: {exc}") from exc
    try:
        return validate_rule_set_json(raw)
    except RuleSetError as exc:
        raise RuleSetError(f"{path}: {exc}") from exc
