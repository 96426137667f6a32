# plan_tsv.py
# =============================================================================
# Plan TSV parsing for the bulk plan importer.
# Header-driven, one exercise per row, grouped into plans by plan_name.
# Every malformed line is reported; nothing here touches the database.
# =============================================================================

from __future__ import annotations

import math
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

REQUIRED_COLUMNS = ("plan_name", "base_template_name", "exercise_name")


class PlanTsvError(ValueError):
    """Raised with the full list of problems found in a TSV document."""

    def __init__(self, errors: List[str]):
        super().__init__(f"{len(errors)} error(s) in plan TSV")
        self.errors = errors


class PlanRow(BaseModel):
    line: int
    exercise_name: str
    sort_order: Optional[int] = None
    target_sets: Optional[int] = None
    target_reps: Optional[str] = None
    target_weight: Optional[float] = None
    notes: Optional[str] = None


class PlanDraft(BaseModel):
    name: str
    base_template_name: str
    exercises: List[PlanRow] = Field(default_factory=list)


def clean_name(v: str) -> str:
    """Trim and collapse inner whitespace: '  Back   Squat ' -> 'Back Squat'."""
    return " ".join(v.split())


def _parse_positive_int(raw: str, column: str, line: int, errors: List[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        n = int(raw)
    except ValueError:
        errors.append(f"line {line}: {column} must be a whole number, got {raw!r}")
        return None
    if n < 1:
        errors.append(f"line {line}: {column} must be at least 1, got {n}")
        return None
    return n


def _parse_weight(raw: str, line: int, errors: List[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        w = float(raw)
    except ValueError:
        errors.append(f"line {line}: target_weight must be a number, got {raw!r}")
        return None
    if math.isnan(w) or math.isinf(w) or w < 0:
        errors.append(f"line {line}: target_weight must be a non-negative number, got {raw!r}")
        return None
    return w


def _read_header(cells: List[str], line: int) -> List[str]:
    header = [c.strip().lower() for c in cells]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise PlanTsvError([f"line {line}: header is missing column(s): {', '.join(missing)}"])
    dupes = sorted({c for c in header if c and header.count(c) > 1})
    if dupes:
        raise PlanTsvError([f"line {line}: duplicate header column(s): {', '.join(dupes)}"])
    return header


def parse_plan_tsv(text: str) -> List[PlanDraft]:
    """Parse a plan TSV document into one draft per plan.

    Blank lines and lines starting with '#' are skipped. Columns beyond the
    known ones are ignored. Within a plan, exercises are ordered by explicit
    sort_order first (rows without one keep file order after them) and then
    renumbered 1..N.

    Raises PlanTsvError carrying every problem found.
    """
    errors: List[str] = []
    header: Optional[List[str]] = None
    drafts: Dict[str, PlanDraft] = {}
    seen_exercises: Dict[str, Set[str]] = {}
    seen_orders: Dict[str, Set[int]] = {}

    for line, raw_line in enumerate(text.lstrip("\ufeff").splitlines(), start=1):
        if not raw_line.strip() or raw_line.lstrip().startswith("#"):
            continue
        cells = [c.strip() for c in raw_line.split("\t")]

        if header is None:
            header = _read_header(cells, line)
            continue

        # spreadsheets like to leave trailing tabs behind
        while len(cells) > len(header) and cells[-1] == "":
            cells.pop()
        if len(cells) > len(header):
            errors.append(f"line {line}: {len(cells)} cells but the header has {len(header)} columns")
            continue
        row = dict(zip(header, cells + [""] * (len(header) - len(cells))))

        plan_name = clean_name(row["plan_name"])
        template_name = clean_name(row["base_template_name"])
        exercise_name = clean_name(row["exercise_name"])
        missing = [
            col for col, val in (
                ("plan_name", plan_name),
                ("base_template_name", template_name),
                ("exercise_name", exercise_name),
            ) if not val
        ]
        if missing:
            errors.append(f"line {line}: missing value for {', '.join(missing)}")
            continue

        n_errors = len(errors)
        sort_order = _parse_positive_int(row.get("sort_order", ""), "sort_order", line, errors)
        target_sets = _parse_positive_int(row.get("target_sets", ""), "target_sets", line, errors)
        target_weight = _parse_weight(row.get("target_weight", ""), line, errors)
        if len(errors) > n_errors:
            continue

        key = plan_name.lower()
        draft = drafts.get(key)
        if draft is None:
            draft = drafts[key] = PlanDraft(name=plan_name, base_template_name=template_name)
            seen_exercises[key] = set()
            seen_orders[key] = set()
        elif draft.base_template_name.lower() != template_name.lower():
            errors.append(
                f"line {line}: plan {plan_name!r} already uses base template "
                f"{draft.base_template_name!r}, got {template_name!r}"
            )
            continue

        if exercise_name.lower() in seen_exercises[key]:
            errors.append(f"line {line}: exercise {exercise_name!r} listed twice in plan {plan_name!r}")
            continue
        if sort_order is not None and sort_order in seen_orders[key]:
            errors.append(f"line {line}: sort_order {sort_order} used twice in plan {plan_name!r}")
            continue
        seen_exercises[key].add(exercise_name.lower())
        if sort_order is not None:
            seen_orders[key].add(sort_order)

        draft.exercises.append(PlanRow(
            line=line,
            exercise_name=exercise_name,
            sort_order=sort_order,
            target_sets=target_sets,
            target_reps=row.get("target_reps") or None,
            target_weight=target_weight,
            notes=row.get("notes") or None,
        ))

    if header is None:
        raise PlanTsvError(["no header row found"])
    if not drafts and not errors:
        errors.append("no plan rows found")
    if errors:
        raise PlanTsvError(errors)

    for draft in drafts.values():
        ordered = sorted(
            draft.exercises,
            key=lambda r: (r.sort_order is None, r.sort_order or 0, r.line),
        )
        draft.exercises = [
            r.model_copy(update={"sort_order": idx}) for idx, r in enumerate(ordered, start=1)
        ]
    return list(drafts.values())
