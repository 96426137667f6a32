"""
Unit tests for the plan TSV parser. No database involved.
"""
import pytest

from plan_tsv import PlanTsvError, clean_name, parse_plan_tsv

HEADER = "plan_name\tbase_template_name\texercise_name\tsort_order\ttarget_sets\ttarget_reps\ttarget_weight\tnotes"


def _tsv(*rows):
    return "\n".join((HEADER,) + rows)


def _errors(text):
    with pytest.raises(PlanTsvError) as exc:
        parse_plan_tsv(text)
    return exc.value.errors


def test_clean_name():
    assert clean_name("  Back \t  Squat ") == "Back Squat"
    assert clean_name("   ") == ""


def test_groups_rows_by_plan():
    drafts = parse_plan_tsv(_tsv(
        "Week 1\tLift A\tBack Squat\t1\t3\t5\t100\t",
        "Week 2\tLift B\tDeadlift\t1\t1\t5\t140\t",
        "week 1\tLift A\tBench Press\t2\t3\t5\t70\tpause reps",
    ))
    assert [d.name for d in drafts] == ["Week 1", "Week 2"]
    week1 = drafts[0]
    assert week1.base_template_name == "Lift A"
    assert [r.exercise_name for r in week1.exercises] == ["Back Squat", "Bench Press"]
    bench = week1.exercises[1]
    assert (bench.target_sets, bench.target_reps, bench.target_weight) == (3, "5", 70.0)
    assert bench.notes == "pause reps"
    assert week1.exercises[0].notes is None


def test_sort_order_then_file_order_renumbered():
    drafts = parse_plan_tsv(_tsv(
        "P\tT\tC\t\t\t\t\t",
        "P\tT\tB\t20\t\t\t\t",
        "P\tT\tA\t10\t\t\t\t",
        "P\tT\tD\t\t\t\t\t",
    ))
    assert [(r.exercise_name, r.sort_order) for r in drafts[0].exercises] == [
        ("A", 1), ("B", 2), ("C", 3), ("D", 4),
    ]


def test_optional_columns_may_be_absent():
    text = "exercise_name\tplan_name\tbase_template_name\nSquat\tWeek 1\tLift A\n"
    (draft,) = parse_plan_tsv(text)
    row = draft.exercises[0]
    assert row.exercise_name == "Squat"
    assert (row.sort_order, row.target_sets, row.target_reps, row.target_weight) == (1, None, None, None)


def test_skips_blank_comment_lines_and_bom():
    text = "\ufeff# exported from the planning sheet\n\n" + _tsv(
        "",
        "# Week 1",
        "Week 1\tLift A\tBack Squat\t1\t3\t5\t100\t",
    ) + "\r\n"
    (draft,) = parse_plan_tsv(text)
    assert draft.exercises[0].line == 6


def test_trailing_empty_cells_tolerated():
    (draft,) = parse_plan_tsv(_tsv("Week 1\tLift A\tBack Squat\t1\t3\t5\t100\t\t\t\t"))
    assert draft.exercises[0].target_weight == 100.0


def test_too_many_cells():
    errors = _errors(_tsv("Week 1\tLift A\tBack Squat\t1\t3\t5\t100\tnote\textra"))
    assert errors == ["line 2: 9 cells but the header has 8 columns"]


def test_header_missing_columns():
    errors = _errors("plan_name\texercise_name\nWeek 1\tSquat\n")
    assert errors == ["line 1: header is missing column(s): base_template_name"]


def test_header_duplicate_columns():
    errors = _errors("plan_name\tbase_template_name\texercise_name\tnotes\tNotes\n")
    assert "duplicate header column(s): notes" in errors[0]


def test_empty_documents():
    assert _errors("") == ["no header row found"]
    assert _errors("# only a comment\n") == ["no header row found"]
    assert _errors(HEADER + "\n\n") == ["no plan rows found"]


def test_collects_every_error():
    errors = _errors(_tsv(
        "Week 1\tLift A\t\t1\t3\t5\t100\t",
        "Week 1\tLift A\tSquat\tzero\t3\t5\t100\t",
        "Week 1\tLift A\tBench\t2\t0\t5\t100\t",
        "Week 1\tLift A\tRow\t3\t3\t5\t-5\t",
        "Week 1\tLift A\tCurl\t4\t3\t5\tnan\t",
        "Week 1\tLift A\tDip\t5\t3\t5\t\t",
    ))
    assert [e.split(":")[0] for e in errors] == ["line 2", "line 3", "line 4", "line 5", "line 6"]
    assert "exercise_name" in errors[0]
    assert "sort_order must be a whole number" in errors[1]
    assert "target_sets must be at least 1" in errors[2]
    assert "non-negative" in errors[3]
    assert "non-negative" in errors[4]


def test_conflicting_base_template():
    errors = _errors(_tsv(
        "Week 1\tLift A\tSquat\t\t\t\t\t",
        "Week 1\tLift B\tBench\t\t\t\t\t",
    ))
    assert errors == ["line 3: plan 'Week 1' already uses base template 'Lift A', got 'Lift B'"]


def test_duplicate_exercise_and_sort_order():
    errors = _errors(_tsv(
        "Week 1\tLift A\tSquat\t1\t\t\t\t",
        "Week 1\tLift A\tsquat\t2\t\t\t\t",
        "Week 1\tLift A\tBench\t1\t\t\t\t",
    ))
    assert errors == [
        "line 3: exercise 'squat' listed twice in plan 'Week 1'",
        "line 4: sort_order 1 used twice in plan 'Week 1'",
    ]


def test_error_type_is_value_error():
    with pytest.raises(ValueError):
        parse_plan_tsv("")
