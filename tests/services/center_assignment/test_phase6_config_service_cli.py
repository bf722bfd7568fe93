from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml

from exam_board.center_assignment.cli import main as cli_main
from exam_board.center_assignment.config import CenterAssignmentConfigError, load_profile, parse_profile
from exam_board.center_assignment.engine import CenterAssignmentEngine
from exam_board.center_assignment.service import create_app
from exam_board.center_assignment.store import AssignmentStore, StorageError


YEAR = 2026


def _snapshot() -> dict[str, object]:
    return {
        "regions": [{"region_id": 1, "name": "R1"}],
        "clusters": [{"cluster_id": 10, "name": "C1", "region_id": 1}],
        "exam_centers": [
            {"center_id": 1, "name": "A", "region_id": 1, "cluster_id": 10, "capacity": 100},
            {"center_id": 2, "name": "B", "region_id": 1, "cluster_id": 10, "capacity": 5, "is_active": False},
        ],
        "schools": [
            {"school_id": 1, "name": "S1", "region_id": 1, "cluster_id": 10},
            {"school_id": 2, "name": "S2", "region_id": 1, "cluster_id": 10},
            {"school_id": 3, "name": "S3"},
        ],
        "students": [
            {"student_id": 1, "school_id": 1, "exam_year_id": YEAR, "status": "approved"},
            {"student_id": 2, "school_id": 1, "exam_year_id": YEAR, "status": "approved"},
            {"student_id": 3, "school_id": 2, "exam_year_id": YEAR, "status": "pending"},
            {"student_id": 4, "school_id": 3, "exam_year_id": YEAR, "status": "approved"},
        ],
    }


def _write_profile(tmp_path: Path, locator: str | None = None) -> Path:
    profile = {
        "profile_id": "test",
        "center_assignment": {
            "wiring": {
                "locator": locator or str(tmp_path / "service.sqlite"),
                "commit_timeout_seconds": 5,
            },
            "policy": {"eligible_student_statuses": ["approved"], "record_runs": True},
            "logging": {"level": "DEBUG", "log_path": None},
        },
    }
    path = tmp_path / "profile.yaml"
    path.write_text(yaml.safe_dump(profile, sort_keys=False), encoding="utf-8")
    return path


def test_profile_expands_environment_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXAM_BOARD_DB", raising=False)
    path = _write_profile(tmp_path, locator="${EXAM_BOARD_DB:-runs/exam_board/assignments.sqlite}")
    profile = load_profile(path)
    assert profile.locator == "runs/exam_board/assignments.sqlite"
    assert profile.commit_timeout_seconds == 5.0
    assert profile.eligible_student_statuses == ("approved",)
    assert profile.log_level == logging.DEBUG
    assert profile.log_paths == ()

    monkeypatch.setenv("EXAM_BOARD_DB", "postgresql://exam:exam@db:5432/exam_board")
    assert load_profile(path).locator == "postgresql://exam:exam@db:5432/exam_board"


def test_repository_profiles_parse(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXAM_BOARD_DB", raising=False)
    monkeypatch.delenv("EXAM_BOARD_LOG_PATH", raising=False)
    root = Path(__file__).resolve().parents[3] / "config" / "center_assignment"
    local = load_profile(root / "profile_local.yaml")
    assert local.profile_id == "local"
    assert local.record_runs is True
    shared = load_profile(root / "profile_postgres.yaml")
    assert shared.locator.startswith("postgresql://")


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {"center_assignment": {"wiring": {}}},
        {"center_assignment": {"wiring": {"locator": "x.sqlite", "commit_timeout_seconds": 0}}},
        {"center_assignment": {"wiring": {"locator": "x.sqlite"}, "policy": {"eligible_student_statuses": []}}},
        {"center_assignment": {"wiring": {"locator": "x.sqlite"}, "policy": {"eligible_student_statuses": ["alumni"]}}},
        {"center_assignment": {"wiring": {"locator": "x.sqlite"}, "logging": {"level": "LOUD"}}},
        {"center_assignment": "not-a-mapping"},
    ],
)
def test_invalid_profiles_are_rejected(payload: object) -> None:
    with pytest.raises(CenterAssignmentConfigError):
        parse_profile(payload)


def test_service_run_usage_and_latest_run(tmp_path: Path) -> None:
    profile_path = _write_profile(tmp_path)
    AssignmentStore(tmp_path / "service.sqlite").import_snapshot(_snapshot())
    client = create_app(str(profile_path)).test_client()

    missing = client.get(f"/v1/exam-years/{YEAR}/center-assignments/runs/latest")
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "RUN_NOT_FOUND"

    response = client.post(f"/v1/exam-years/{YEAR}/center-assignments/run")
    assert response.status_code == 200
    body = response.get_json()
    assert body["assignedCount"] == 2
    assert body["skippedCount"] == 1
    assert body["skips"] == [{"schoolId": 3, "reason": "no_region_assigned"}]
    assert {item["schoolId"]: item["centerId"] for item in body["assignments"]} == {1: 1, 2: 1}

    usage = client.get(f"/v1/exam-years/{YEAR}/center-usage").get_json()
    assert usage["centers"] == [{"centerId": 1, "capacity": 100, "used": 2, "remaining": 98}]

    latest = client.get(f"/v1/exam-years/{YEAR}/center-assignments/runs/latest").get_json()
    assert latest["runId"] == body["runId"]
    assert latest["report"]["planDigest"] == body["planDigest"]


def test_service_manual_assignment_status_codes(tmp_path: Path) -> None:
    profile_path = _write_profile(tmp_path)
    AssignmentStore(tmp_path / "service.sqlite").import_snapshot(_snapshot())
    client = create_app(str(profile_path)).test_client()
    url = f"/v1/exam-years/{YEAR}/schools/1/assign-center"

    created = client.post(url, json={"center_id": 1})
    assert created.status_code == 201
    assert created.get_json()["seats"] == 2
    assert created.get_json()["source"] == "manual"

    again = client.post(url, json={"center_id": 1})
    assert again.status_code == 409
    assert again.get_json()["error"] == "ALREADY_ASSIGNED"

    inactive = client.post(f"/v1/exam-years/{YEAR}/schools/2/assign-center", json={"center_id": 2, "seats": 1})
    assert inactive.status_code == 409
    assert inactive.get_json()["error"] == "CENTER_INACTIVE"

    invalid = client.post(f"/v1/exam-years/{YEAR}/schools/2/assign-center", json={})
    assert invalid.status_code == 400
    assert invalid.get_json()["error"] == "INVALID_REQUEST"

    not_an_object = client.post(f"/v1/exam-years/{YEAR}/schools/2/assign-center", json=[1])
    assert not_an_object.status_code == 400
    assert not_an_object.get_json()["error"] == "INVALID_REQUEST"


def test_service_maps_storage_failure_to_503(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(self: CenterAssignmentEngine, exam_year_id: int, **_: object) -> None:
        raise StorageError("READ_FAILED:OperationalError:database is locked")

    monkeypatch.setattr(CenterAssignmentEngine, "run_assignment", _fail)
    client = create_app(str(_write_profile(tmp_path))).test_client()
    response = client.post(f"/v1/exam-years/{YEAR}/center-assignments/run")
    assert response.status_code == 503
    assert response.get_json()["error"] == "STORAGE_UNAVAILABLE"


def test_cli_import_run_assign_and_usage(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    profile_path = str(_write_profile(tmp_path))
    snapshot_path = tmp_path / "snapshot.yaml"
    snapshot_path.write_text(yaml.safe_dump(_snapshot()), encoding="utf-8")

    assert cli_main(["--profile", profile_path, "import-snapshot", str(snapshot_path)]) == 0
    imported = json.loads(capsys.readouterr().out)
    assert imported["schools"] == 3

    assert cli_main(["--profile", profile_path, "assign", "--exam-year", str(YEAR), "--school", "2", "--center", "1", "--seats", "3"]) == 0
    assert json.loads(capsys.readouterr().out)["seats"] == 3

    assert cli_main(["--profile", profile_path, "run", "--exam-year", str(YEAR), "--run-id", "cli-run"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["runId"] == "cli-run"

    assert cli_main(["--profile", profile_path, "run", "--exam-year", str(YEAR), "--run-id", "cli-run"]) == 2
    assert "already recorded" in capsys.readouterr().err
    assert report["assignedCount"] == 1

    assert cli_main(["--profile", profile_path, "usage", "--exam-year", str(YEAR)]) == 0
    usage = json.loads(capsys.readouterr().out)
    assert usage["centers"][0]["used"] == 5

    assert cli_main(["--profile", profile_path, "assign", "--exam-year", str(YEAR), "--school", "2", "--center", "1"]) == 3
    assert "ALREADY_ASSIGNED" in capsys.readouterr().err


def test_cli_rejects_invalid_profile(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("center_assignment: [1, 2]\n", encoding="utf-8")
    assert cli_main(["--profile", str(path), "usage", "--exam-year", str(YEAR)]) == 2
    assert "invalid profile" in capsys.readouterr().err
