"""
Label selector parsing and validation.

Selectors are parsed once into a LabelSelector AST (match_labels + match_expressions)
and evaluated by matcher.matches_selector. Supported text forms (kubectl syntax):

  app=api            key equals value (also app==api)
  tier!=db           key absent or value differs
  env in (a,b)       value in set
  env notin (a,b)    key absent or value not in set
  team               key exists
  !legacy            key does not exist
"""

import re
from typing import Optional

from nsguard.services.shared.errors import InvalidObjectError, MalformedSelectorError
from nsguard.services.shared.models import LabelSelector, SelectorOperator, SelectorRequirement

_KEY_RE   = re.compile(r"^([A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?/)?[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")
_VALUE_RE = re.compile(r"^([A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?)?$")
_SET_RE   = re.compile(r"^(?P<key>\S+)\s+(?P<op>in|notin)\s*\((?P<values>[^()]*)\)$")

_VALUED_OPS   = {SelectorOperator.in_.value, SelectorOperator.not_in.value}
_UNVALUED_OPS = {SelectorOperator.exists.value, SelectorOperator.does_not_exist.value}


def _split_terms(text: str) -> list[str]:
    """Split on commas that are not inside a (...) value set."""
    terms: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise MalformedSelectorError(f"unbalanced ')' in selector '{text}'")
        if ch == "," and depth == 0:
            terms.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    if depth != 0:
        raise MalformedSelectorError(f"unbalanced '(' in selector '{text}'")
    terms.append("".join(current).strip())
    return terms


def parse_selector(text: str) -> LabelSelector:
    """Parse kubectl-style selector text into a LabelSelector. Empty text → match-all."""
    text = (text or "").strip()
    if not text:
        return LabelSelector()

    match_labels: dict[str, str] = {}
    expressions: list[SelectorRequirement] = []

    for term in _split_terms(text):
        if not term:
            raise MalformedSelectorError(f"empty term in selector '{text}'")

        set_match = _SET_RE.match(term)
        if set_match:
            values = tuple(v.strip() for v in set_match.group("values").split(",") if v.strip())
            op = SelectorOperator.in_ if set_match.group("op") == "in" else SelectorOperator.not_in
            expressions.append(SelectorRequirement(key=set_match.group("key"), operator=op.value, values=values))
        elif "!=" in term:
            key, _, value = term.partition("!=")
            expressions.append(SelectorRequirement(
                key=key.strip(), operator=SelectorOperator.not_in.value, values=(value.strip(),),
            ))
        elif "=" in term:
            key, _, value = term.replace("==", "=", 1).partition("=")
            key, value = key.strip(), value.strip()
            if key in match_labels and match_labels[key] != value:
                raise MalformedSelectorError(f"conflicting values for '{key}' in selector '{text}'")
            match_labels[key] = value
        elif term.startswith("!"):
            expressions.append(SelectorRequirement(key=term[1:].strip(), operator=SelectorOperator.does_not_exist.value))
        else:
            expressions.append(SelectorRequirement(key=term, operator=SelectorOperator.exists.value))

    selector = LabelSelector(match_labels=match_labels, match_expressions=tuple(expressions))
    validate_selector(selector)
    return selector


def validate_selector(
    selector: LabelSelector,
    object_ref: Optional[str] = None,
    field: Optional[str] = None,
) -> None:
    """Raise MalformedSelectorError if any key, value or operator is invalid."""
    for key, value in selector.match_labels.items():
        if not _KEY_RE.match(key):
            raise MalformedSelectorError(f"invalid label key '{key}'", object_ref=object_ref, field=field)
        if not _VALUE_RE.match(value):
            raise MalformedSelectorError(
                f"invalid label value '{value}' for key '{key}'", object_ref=object_ref, field=field,
            )

    for i, req in enumerate(selector.match_expressions):
        where = f"{field}.match_expressions[{i}]" if field else f"match_expressions[{i}]"
        if not _KEY_RE.match(req.key):
            raise MalformedSelectorError(f"invalid label key '{req.key}'", object_ref=object_ref, field=where)
        if req.operator in _VALUED_OPS:
            if not req.values:
                raise MalformedSelectorError(
                    f"operator {req.operator} requires at least one value", object_ref=object_ref, field=where,
                )
            for value in req.values:
                if not _VALUE_RE.match(value):
                    raise MalformedSelectorError(
                        f"invalid label value '{value}'", object_ref=object_ref, field=where,
                    )
        elif req.operator in _UNVALUED_OPS:
            if req.values:
                raise MalformedSelectorError(
                    f"operator {req.operator} takes no values", object_ref=object_ref, field=where,
                )
        else:
            raise MalformedSelectorError(
                f"unknown selector operator '{req.operator}'", object_ref=object_ref, field=where,
            )


def validate_labels(labels: dict[str, str], object_ref: Optional[str] = None, field: str = "labels") -> None:
    """Object labels follow the same key/value syntax as selectors."""
    for key, value in labels.items():
        if not _KEY_RE.match(key):
            raise InvalidObjectError(f"invalid label key '{key}'", object_ref=object_ref, field=f"{field}.{key}")
        if not _VALUE_RE.match(value):
            raise InvalidObjectError(
                f"invalid label value '{value}' for key '{key}'", object_ref=object_ref, field=f"{field}.{key}",
            )
