"""
Unit tests for label selector parsing and validation.
"""

import pytest

from nsguard.services.shared.errors import InvalidObjectError, MalformedSelectorError
from nsguard.services.shared.matcher import matches_selector
from nsguard.services.shared.models import LabelSelector, SelectorRequirement
from nsguard.services.shared.selectors import parse_selector, validate_labels, validate_selector


# ── parse_selector ─────────────────────────────────────────────────────────────

def test_empty_text_is_match_all():
    sel = parse_selector("")
    assert sel.is_empty
    assert matches_selector(sel, {"anything": "goes"})


def test_equality_terms_become_match_labels():
    sel = parse_selector("app=api, tier==web")
    assert sel.match_labels == {"app": "api", "tier": "web"}
    assert sel.match_expressions == ()


def test_full_grammar():
    sel = parse_selector("app=api,tier!=db,env in (prod, staging),!legacy,team")
    ops = [(e.key, e.operator, e.values) for e in sel.match_expressions]
    assert ("tier", "NotIn", ("db",)) in ops
    assert ("env", "In", ("prod", "staging")) in ops
    assert ("legacy", "DoesNotExist", ()) in ops
    assert ("team", "Exists", ()) in ops


def test_parsed_selector_evaluates():
    sel = parse_selector("app=api,env notin (dev),!legacy")
    assert matches_selector(sel, {"app": "api", "env": "prod"})
    assert not matches_selector(sel, {"app": "api", "env": "dev"})
    assert not matches_selector(sel, {"app": "api", "legacy": "true"})


@pytest.mark.parametrize("text", [
    "app=api,",
    "env in (a,b",
    "env in a,b)",
    "app=api,app=web",
    "-bad-key=x",
    "app=not valid",
    "env in ()",
])
def test_malformed_text_rejected(text):
    with pytest.raises(MalformedSelectorError):
        parse_selector(text)


# ── validate_selector ──────────────────────────────────────────────────────────

def test_unknown_operator_rejected_with_field():
    sel = LabelSelector(match_expressions=(SelectorRequirement(key="app", operator="Like", values=("a",)),))
    with pytest.raises(MalformedSelectorError) as exc:
        validate_selector(sel, object_ref="NetworkPolicy:ns-a/p", field="pod_selector")
    assert exc.value.object_ref == "NetworkPolicy:ns-a/p"
    assert exc.value.field == "pod_selector.match_expressions[0]"
    assert exc.value.code == "ErrMalformedSelector"


def test_exists_with_values_rejected():
    sel = LabelSelector(match_expressions=(SelectorRequirement(key="app", operator="Exists", values=("x",)),))
    with pytest.raises(MalformedSelectorError):
        validate_selector(sel)


def test_in_without_values_rejected():
    sel = LabelSelector(match_expressions=(SelectorRequirement(key="app", operator="In"),))
    with pytest.raises(MalformedSelectorError):
        validate_selector(sel)


def test_prefixed_keys_are_valid():
    validate_selector(LabelSelector(match_labels={"kubernetes.io/metadata.name": "ns-a"}))


def test_invalid_object_labels_rejected():
    with pytest.raises(InvalidObjectError) as exc:
        validate_labels({"ok": "fine", "bad key": "x"}, object_ref="Namespace:ns-a")
    assert exc.value.field == "labels.bad key"
