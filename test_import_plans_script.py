"""
Tests for scripts/import_plans.py with the HTTP calls faked out.
"""
import importlib.util
import os

import pytest

_SCRIPT = os.path.join(os.path.dirname(__file__), "scripts", "import_plans.py")
_spec = importlib.util.spec_from_file_location("import_plans_script", _SCRIPT)
import_plans_script = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(import_plans_script)


class FakeResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data
        self.text = str(data)

    def json(self):
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise import_plans_script.requests.HTTPError(f"{self.status_code}")


@pytest.fixture
def tsv_file(tmp_path):
    path = tmp_path / "plans.tsv"
    path.write_text("plan_name\tbase_template_name\texercise_name\nWeek 1\tLift A\tSquat\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def calls(monkeypatch):
    recorded = {"posts": []}

    def fake_get(url, timeout):
        recorded["health"] = url
        return FakeResponse(200, {"ok": True, "db_type": "SQLite"})

    def fake_post(url, json, timeout):
        recorded["posts"].append((url, json))
        return recorded.get("reply", FakeResponse(200, {
            "ok": True, "dry_run": json["dry_run"], "mode": json["mode"], "rows": 1,
            "plans": [{"name": "Week 1", "base_template": "Lift A", "action": "create",
                       "exercises": 1, "plan_id": None}],
            "new_exercises": [],
        }))

    monkeypatch.setattr(import_plans_script.requests, "get", fake_get)
    monkeypatch.setattr(import_plans_script.requests, "post", fake_post)
    return recorded


def test_dry_run_by_default(tsv_file, calls, capsys):
    assert import_plans_script.main([tsv_file, "localhost:3001/"]) == 0
    assert calls["health"] == "https://localhost:3001/api/health"
    url, payload = calls["posts"][0]
    assert url == "https://localhost:3001/api/import/plans"
    assert payload["dry_run"] is True
    assert payload["mode"] == "create"
    assert payload["tsv"].startswith("plan_name\t")
    assert "DRY RUN" in capsys.readouterr().out


def test_commit_and_replace_flags(tsv_file, calls):
    assert import_plans_script.main(["--replace", tsv_file, "http://api.local", "--commit"]) == 0
    _, payload = calls["posts"][0]
    assert payload["dry_run"] is False
    assert payload["mode"] == "replace"


def test_prints_error_list(tsv_file, calls, capsys):
    calls["reply"] = FakeResponse(400, {"detail": {
        "message": "Plan TSV has errors",
        "errors": ["line 2: missing value for exercise_name"],
    }})
    assert import_plans_script.main([tsv_file, "http://api.local"]) == 1
    out = capsys.readouterr().out
    assert "Plan TSV has errors:" in out
    assert "  - line 2: missing value for exercise_name" in out


def test_bad_arguments(capsys):
    assert import_plans_script.main(["only-one-arg"]) == 1
    assert import_plans_script.main(["a.tsv", "http://x", "--force"]) == 1
    assert "Usage" in capsys.readouterr().out
