"""Validation and evaluation of declarative segment predicates.

Grammar (JSON):
  - {"and": [expr, ...]}, {"or": [expr, ...]}, {"not": expr}
  - leaf {"field": <trait name>, "op": <op>, "value": <literal>}

Ops: eq, neq, gt, gte, lt, lte, between, in, nin, exists, stage_gte, stage_lte.
Fields name ComputedTraits attributes, or operator traits as "traits.<key>".

Evaluation is total: it never raises. Missing numeric fields read as 0,
a missing stage as "visitor", anything else missing as None; a malformed
clause evaluates to False.
"""
from __future__ import annotations
from typing import Any, Tuple
from identity_sync.scoring import ComputedTraits, FunnelStage

NUMERIC_OPS = {"gt", "gte", "lt", "lte", "between"}
SET_OPS = {"in", "nin"}
STAGE_OPS = {"stage_gte", "stage_lte"}
ALLOWED_OPS = {"eq", "neq", "exists"} | NUMERIC_OPS | SET_OPS | STAGE_OPS
BOOL_KEYS = ("and", "or", "not")
MAX_DEPTH = 12

NUMERIC_FIELDS = {
    "intent_score", "frequency_score", "depth_score", "recency_days", "session_count",
    "lifetime_value", "orders_count", "unique_products_viewed", "unique_categories_viewed",
    "add_to_cart_7d", "cart_abandoned_hours",
}
STAGE_FIELDS = {"drop_off_stage"}
TRAIT_FIELDS = set(ComputedTraits.__dataclass_fields__)


def validate_condition_expr(expr: Any, depth: int = 0) -> Tuple[bool, str | None]:
    if depth > MAX_DEPTH:
        return False, "too_deep"
    if not isinstance(expr, dict) or not expr:
        return False, "clause_not_object"
    bool_keys = [k for k in BOOL_KEYS if k in expr]
    if bool_keys:
        if len(expr) != 1:
            return False, "mixed_clause"
        key = bool_keys[0]
        children = expr[key]
        if key == "not":
            return validate_condition_expr(children, depth + 1)
        if not isinstance(children, list) or not children:
            return False, f"{key}_requires_list"
        for c in children:
            ok, reason = validate_condition_expr(c, depth + 1)
            if not ok:
                return ok, reason
        return True, None
    field, op = expr.get("field"), expr.get("op")
    if not isinstance(field, str) or not field:
        return False, "missing_field"
    if not (field in TRAIT_FIELDS or field.startswith("traits.")):
        return False, f"unknown_field:{field}"
    if op not in ALLOWED_OPS:
        return False, f"op_not_allowed:{op}"
    value = expr.get("value")
    if op in SET_OPS and not isinstance(value, list):
        return False, "set_op_requires_list"
    if op == "between" and not (isinstance(value, list) and len(value) == 2):
        return False, "between_requires_pair"
    if op in STAGE_OPS and str(value).upper() not in FunnelStage.__members__:
        return False, f"unknown_stage:{value}"
    return True, None


def _lookup(field: str, traits: dict, operator_traits: dict) -> Any:
    if field.startswith("traits."):
        return operator_traits.get(field[len("traits."):])
    value = traits.get(field)
    if value is None and field in NUMERIC_FIELDS:
        return 0
    if value is None and field in STAGE_FIELDS:
        return FunnelStage.VISITOR.label
    return value


def _num(v: Any) -> float | None:
    if isinstance(v, bool):
        return float(v)
    try:
        return float(v)
    except (TypeError, ValueError, OverflowError):
        return None


def _eval_leaf(clause: dict, traits: dict, operator_traits: dict) -> bool:
    field, op, val = clause.get("field"), clause.get("op"), clause.get("value")
    if not isinstance(field, str) or op not in ALLOWED_OPS:
        return False
    cur = _lookup(field, traits, operator_traits)
    if op == "eq":
        return cur == val
    if op == "neq":
        return cur != val
    if op == "exists":
        present = cur is not None and not (field in NUMERIC_FIELDS and traits.get(field) is None)
        return present == bool(True if val is None else val)
    if op == "in":
        return isinstance(val, list) and cur in val
    if op == "nin":
        return isinstance(val, list) and cur not in val
    if op in STAGE_OPS:
        have, want = FunnelStage.parse(cur), FunnelStage.parse(val)
        return have >= want if op == "stage_gte" else have <= want
    a = _num(cur)
    if a is None:
        a = 0.0
    if op == "between":
        if not (isinstance(val, list) and len(val) == 2):
            return False
        lo, hi = _num(val[0]), _num(val[1])
        return lo is not None and hi is not None and lo <= a <= hi
    b = _num(val)
    if b is None:
        return False
    if op == "gt":
        return a > b
    if op == "gte":
        return a >= b
    if op == "lt":
        return a < b
    return a <= b


def evaluate_condition(expr: Any, traits: dict, operator_traits: dict | None = None, depth: int = 0) -> bool:
    operator_traits = operator_traits or {}
    if depth > MAX_DEPTH or not isinstance(expr, dict):
        return False
    if "and" in expr:
        children = expr["and"]
        return isinstance(children, list) and all(evaluate_condition(c, traits, operator_traits, depth + 1) for c in children)
    if "or" in expr:
        children = expr["or"]
        return isinstance(children, list) and any(evaluate_condition(c, traits, operator_traits, depth + 1) for c in children)
    if "not" in expr:
        if not validate_condition_expr(expr["not"], depth + 1)[0]:
            return False
        return not evaluate_condition(expr["not"], traits, operator_traits, depth + 1)
    return _eval_leaf(expr, traits, operator_traits)
