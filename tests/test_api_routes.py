"""
Tests for the HTTP layer: actor headers and error mapping.

Services are replaced with stubs so these tests exercise routing only.
"""

import pytest
from fastapi.testclient import TestClient

from league_engine.api.main import app
from league_engine.database.db import get_db_session
from league_engine.services import box_week_service, ladder_service, notification_service, scoring_service
from league_engine.services.errors import NotFoundError, StateConflictError, ValidationError

ORGANIZER_HEADERS = {"X-Actor-Id": "org-1", "X-Actor-Role": "organizer"}
PLAYER_HEADERS = {"X-Actor-Id": "p1", "X-Actor-Name": "Player 1"}


async def _no_session():
    yield None


@pytest.fixture
def client():
    app.dependency_overrides[get_db_session] = _no_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def raising(error):
    async def _raise(*args, **kwargs):
        raise error

    return _raise


def test_actor_header_required(client):
    response = client.post("/api/matches/1/sign")
    assert response.status_code == 401
    assert "X-Actor-Id" in response.json()["detail"]


def test_unknown_actor_role(client):
    response = client.post("/api/matches/1/sign", headers={"X-Actor-Id": "p1", "X-Actor-Role": "referee"})
    assert response.status_code == 400


@pytest.mark.parametrize(
    "error,status_code",
    [
        (ValidationError("Game 1: 11-10 is not a legal score"), 400),
        (NotFoundError("Match 1 not found"), 404),
        (StateConflictError("Cannot propose a score for match 1 in state official"), 409),
    ],
)
def test_engine_errors_map_to_status_codes(client, monkeypatch, error, status_code):
    monkeypatch.setattr(scoring_service, "propose_score", raising(error))

    response = client.post(
        "/api/matches/1/propose",
        json={"scores": [{"score_a": 11, "score_b": 10}]},
        headers=PLAYER_HEADERS,
    )
    assert response.status_code == status_code
    assert response.json()["detail"] == str(error)


def test_actor_passed_to_service(client, monkeypatch):
    seen = {}

    async def fake_dispute(session, match_id, actor, reason, notes=None):
        seen.update(match_id=match_id, actor=actor, reason=reason, notes=notes)
        raise StateConflictError("stop here")

    monkeypatch.setattr(scoring_service, "dispute_score", fake_dispute)
    response = client.post(
        "/api/matches/7/dispute",
        json={"reason": "wrong_score", "notes": "We won"},
        headers=PLAYER_HEADERS,
    )

    assert response.status_code == 409
    assert seen["match_id"] == 7
    assert seen["actor"].id == "p1"
    assert seen["actor"].name == "Player 1"
    assert seen["reason"] == "wrong_score"
    assert seen["notes"] == "We won"


def test_empty_score_list_rejected_by_schema(client):
    response = client.post("/api/matches/1/propose", json={"scores": []}, headers=PLAYER_HEADERS)
    assert response.status_code == 422


def test_negative_score_rejected_by_schema(client):
    response = client.post(
        "/api/matches/1/propose",
        json={"scores": [{"score_a": -1, "score_b": 11}]},
        headers=PLAYER_HEADERS,
    )
    assert response.status_code == 422


def test_get_missing_week_is_404(client, monkeypatch):
    monkeypatch.setattr(box_week_service, "get_week", raising(NotFoundError("Week 3 not found in league 1")))
    response = client.get("/api/leagues/1/box-weeks/3")
    assert response.status_code == 404


def test_list_weeks(client, monkeypatch):
    async def fake_list(session, league_id):
        return []

    monkeypatch.setattr(box_week_service, "list_weeks", fake_list)
    response = client.get("/api/leagues/1/box-weeks")
    assert response.status_code == 200
    assert response.json() == []


def test_finalize_week_conflict(client, monkeypatch):
    monkeypatch.setattr(
        box_week_service,
        "finalize_week",
        raising(StateConflictError("Week 1 of league 1 is already finalized")),
    )
    response = client.post("/api/leagues/1/box-weeks/1/finalize", headers=ORGANIZER_HEADERS)
    assert response.status_code == 409
    assert "already finalized" in response.json()["detail"]


def test_mark_notifications_read(client, monkeypatch):
    calls = []

    async def fake_mark(session, recipient_id):
        calls.append(recipient_id)
        return 3

    monkeypatch.setattr(notification_service, "mark_all_as_read", fake_mark)
    response = client.put("/api/notifications/mark-all-read", headers=PLAYER_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"updated": 3}
    assert calls == ["p1"]


def test_get_ladder(client, monkeypatch):
    async def fake_ladder(session, league_id):
        return [4, 1, 2]

    monkeypatch.setattr(ladder_service, "get_ladder", fake_ladder)
    response = client.get("/api/leagues/1/ladder")
    assert response.status_code == 200
    assert response.json() == [4, 1, 2]


def test_create_challenge_passes_members(client, monkeypatch):
    seen = {}

    async def fake_create(session, league_id, actor, challenger_member_id, challenged_member_id):
        seen.update(actor=actor.id, members=(challenger_member_id, challenged_member_id))
        raise ValidationError("Challenges reach at most 3 places up; Player 1 is 4 places above")

    monkeypatch.setattr(ladder_service, "create_challenge", fake_create)
    response = client.post(
        "/api/leagues/1/challenges",
        json={"challenger_member_id": 5, "challenged_member_id": 1},
        headers=PLAYER_HEADERS,
    )
    assert response.status_code == 400
    assert seen == {"actor": "p1", "members": (5, 1)}


def test_declare_absence_outside_draft_conflicts(client, monkeypatch):
    monkeypatch.setattr(
        box_week_service,
        "declare_absence",
        raising(StateConflictError("Absences can be declared only in draft weeks; week 1 is active")),
    )
    response = client.post("/api/leagues/1/box-weeks/1/absences", json={"member_id": 3}, headers=PLAYER_HEADERS)
    assert response.status_code == 409
