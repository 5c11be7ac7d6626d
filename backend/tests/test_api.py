from __future__ import annotations

import json

import httpx
import pytest
from fastapi.testclient import TestClient

import interview_maniac.gemini as gemini_module
import interview_maniac.main as main_module
from interview_maniac.main import app

GOOD_RUBRIC = {
    "scores": {"clarity": 5, "relevance": 4, "impact": 5, "metrics": 2, "storyArc": 3, "concision": 4},
    "totalScore": 30,
    "averageScore": 5,
    "feedback": {"strengths": ["Clear result"], "improvements": ["Quantify the challenge"], "suggestions": []},
    "overallAssessment": "Good story with a clear result.",
}

STORY = {
    "role": "Backend Engineer",
    "industry": "Fintech",
    "achievement": "Cut payment latency by 40%",
    "because": "Checkout timeouts were costing conversions",
    "therefore": "Conversion rose 6% in a quarter",
}


@pytest.fixture(autouse=True)
def isolated_runtime(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("INTERVIEW_MANIAC_DB_PATH", str(tmp_path / "interview_maniac_test.sqlite3"))
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setenv("INTERVIEW_MANIAC_GEMINI_ENABLED", "true")
    monkeypatch.setenv("INTERVIEW_MANIAC_REQUIRE_LOGIN_FOR_SESSIONS", "true")
    monkeypatch.setenv("INTERVIEW_MANIAC_BATCH_DELAY_MS", "0")
    monkeypatch.delenv("GEMINI_SCORING_MODEL", raising=False)
    monkeypatch.setattr(main_module, "RATE_LIMITER", main_module.SessionRateLimiter(limit=20, window_seconds=60))
    monkeypatch.setattr(
        main_module,
        "AUTH_LOGIN_RATE_LIMITER",
        main_module.AuthLoginRateLimiter(fail_limit=3, window_seconds=60, lock_seconds=60),
    )
    monkeypatch.setattr(main_module, "METRICS", main_module.MetricsTracker())


@pytest.fixture
def client() -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def fake_gemini(monkeypatch) -> list[str]:
    prompts: list[str] = []

    def fake_call(prompt: str, **kwargs) -> str:
        prompts.append(prompt)
        return json.dumps(GOOD_RUBRIC)

    monkeypatch.setattr(gemini_module, "call_gemini", fake_call)
    return prompts


def assert_error_shape(data: dict, *, expected_code: str) -> None:
    assert data["code"] == expected_code
    assert isinstance(data["message"], str)
    assert data["message"]
    assert isinstance(data["requestId"], str)
    assert data["requestId"]


def signup(client: TestClient, email: str = "alice@example.com") -> dict[str, str]:
    resp = client.post("/api/auth/signup", json={"email": email, "password": "secret-pass", "displayName": "Alice"})
    assert resp.status_code == 200
    token = resp.json()["token"]
    return {"Authorization": f"Bearer {token}"}


def reply_with(monkeypatch, text: str) -> None:
    monkeypatch.setattr(gemini_module, "call_gemini", lambda prompt, **kwargs: text)


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["x-request-id"]
    assert resp.headers["x-session-id"]


def test_request_and_session_ids_are_echoed(client: TestClient) -> None:
    resp = client.get("/health", headers={"x-request-id": "req-1", "x-session-id": "sess-abc"})
    assert resp.headers["x-request-id"] == "req-1"
    assert resp.headers["x-session-id"] == "sess-abc"


def test_invalid_session_id_is_rejected(client: TestClient) -> None:
    resp = client.get("/api/progress", headers={"x-session-id": "!!"})
    assert resp.status_code == 400
    assert_error_shape(resp.json(), expected_code="BAD_REQUEST")


def test_auth_signup_me_logout_flow(client: TestClient) -> None:
    headers = signup(client)

    me = client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "alice@example.com"
    assert me.json()["user"]["displayName"] == "Alice"

    logout = client.post("/api/auth/logout", headers=headers)
    assert logout.status_code == 200
    assert logout.json()["revoked"] is True

    after = client.get("/api/auth/me", headers=headers)
    assert after.status_code == 401
    assert_error_shape(after.json(), expected_code="UNAUTHORIZED")


def test_duplicate_signup_conflicts(client: TestClient) -> None:
    signup(client)
    resp = TestClient(app, raise_server_exceptions=False).post(
        "/api/auth/signup",
        json={"email": "ALICE@example.com", "password": "secret-pass"},
    )
    assert resp.status_code == 409
    assert_error_shape(resp.json(), expected_code="AUTH_ACCOUNT_EXISTS")


def test_signup_rejects_short_password(client: TestClient) -> None:
    resp = client.post("/api/auth/signup", json={"email": "bob@example.com", "password": "123"})
    assert resp.status_code == 400
    assert_error_shape(resp.json(), expected_code="BAD_REQUEST")


def test_login_success_and_lockout(client: TestClient) -> None:
    signup(client)
    fresh = TestClient(app, raise_server_exceptions=False)

    ok = fresh.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret-pass"})
    assert ok.status_code == 200
    assert ok.json()["token"]

    for _ in range(2):
        bad = fresh.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-pass"})
        assert bad.status_code == 401
        assert_error_shape(bad.json(), expected_code="AUTH_INVALID_CREDENTIALS")

    locked = fresh.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-pass"})
    assert locked.status_code == 429
    assert_error_shape(locked.json(), expected_code="AUTH_LOGIN_RATE_LIMITED")
    assert locked.json()["retryAfterSec"] > 0

    still_locked = fresh.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret-pass"})
    assert still_locked.status_code == 429


def test_me_requires_login(client: TestClient) -> None:
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert_error_shape(resp.json(), expected_code="AUTH_LOGIN_REQUIRED")


def test_invalid_token_is_rejected_on_protected_paths(client: TestClient) -> None:
    resp = client.get("/api/progress", headers={"Authorization": "Bearer nope"})
    assert resp.status_code == 401
    assert_error_shape(resp.json(), expected_code="UNAUTHORIZED")


def test_abt_score_success(client: TestClient, fake_gemini: list[str]) -> None:
    resp = client.post("/api/abt/score", json=STORY, headers={"x-request-id": "req-score"})
    assert resp.status_code == 200

    data = resp.json()
    assert data["requestId"] == "req-score"
    assert data["totalScore"] == 23
    assert data["averageScore"] == 3.8
    assert data["category"] == "Good"
    assert data["recommendations"]["priority"] == "low"
    assert data["recommendations"]["focus"] == ["storyArc"]
    assert data["parsed"] is True
    assert data["model"] == "gemini-1.5-pro"
    assert data["feedback"]["strengths"] == ["Clear result"]
    assert len(fake_gemini) == 1


def test_abt_score_missing_fields_returns_400_without_calling_model(client: TestClient, fake_gemini: list[str]) -> None:
    resp = client.post("/api/abt/score", json={**STORY, "because": "  ", "therefore": ""})
    assert resp.status_code == 400
    data = resp.json()
    assert_error_shape(data, expected_code="BAD_REQUEST")
    assert data["missingFields"] == ["because", "therefore"]
    assert fake_gemini == []


def test_abt_score_unparseable_reply_degrades_to_zero(client: TestClient, monkeypatch) -> None:
    reply_with(monkeypatch, "This story is pretty good overall.")
    resp = client.post("/api/abt/score", json=STORY)
    assert resp.status_code == 200
    data = resp.json()
    assert data["parsed"] is False
    assert data["totalScore"] == 0
    assert data["category"] == "Needs Improvement"
    assert data["overallAssessment"] == "This story is pretty good overall."


def test_abt_score_clamps_huge_dimension_values(client: TestClient, monkeypatch) -> None:
    reply_with(monkeypatch, '{"scores": {"clarity": 1' + "0" * 400 + ', "relevance": 2.5}}')
    resp = client.post("/api/abt/score", json=STORY)
    assert resp.status_code == 200
    data = resp.json()
    assert data["scores"]["clarity"] == 5
    assert data["scores"]["relevance"] == 3
    assert data["totalScore"] == 8


@pytest.mark.parametrize("exc", [gemini_module.GeminiError("Gemini API error: 500"), httpx.ConnectError("down")])
def test_abt_score_upstream_failure_maps_to_502(client: TestClient, monkeypatch, exc: Exception) -> None:
    def fail_call(prompt: str, **kwargs) -> str:
        raise exc

    monkeypatch.setattr(gemini_module, "call_gemini", fail_call)
    resp = client.post("/api/abt/score", json=STORY)
    assert resp.status_code == 502
    assert_error_shape(resp.json(), expected_code="UPSTREAM_ERROR")
    assert "try again later" in resp.json()["message"]


def test_gemini_disabled_returns_503(client: TestClient, monkeypatch, fake_gemini: list[str]) -> None:
    monkeypatch.setenv("INTERVIEW_MANIAC_GEMINI_ENABLED", "false")
    resp = client.post("/api/gemini/generate", json={"prompt": "hello"})
    assert resp.status_code == 503
    assert_error_shape(resp.json(), expected_code="GEMINI_UNAVAILABLE")
    assert fake_gemini == []


def test_missing_api_key_returns_503(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "")
    resp = client.post("/api/abt/score", json=STORY)
    assert resp.status_code == 503
    assert_error_shape(resp.json(), expected_code="GEMINI_UNAVAILABLE")


def test_generate_structured_type_is_parsed(client: TestClient, monkeypatch) -> None:
    reply_with(monkeypatch, 'Here are your questions:\n["Why us?", "Tell me about a conflict"]')
    resp = client.post("/api/gemini/generate", json={"prompt": "backend role", "type": "interview-questions"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["parsed"] is True
    assert data["data"] == ["Why us?", "Tell me about a conflict"]


def test_generate_general_type_returns_raw_content(client: TestClient, monkeypatch) -> None:
    reply_with(monkeypatch, "Just some advice.")
    resp = client.post("/api/gemini/generate", json={"prompt": "tips"})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"content": "Just some advice."}
    assert resp.json()["parsed"] is False


def test_generate_rejects_unknown_type(client: TestClient, fake_gemini: list[str]) -> None:
    resp = client.post("/api/gemini/generate", json={"prompt": "tips", "type": "poem"})
    assert resp.status_code == 422
    assert_error_shape(resp.json(), expected_code="VALIDATION_ERROR")


def test_improve_parsed_and_fallback(client: TestClient, monkeypatch) -> None:
    payload = {"story": "I fixed the checkout.", "role": "Engineer", "industry": "Retail"}

    reply_with(monkeypatch, json.dumps({"improvedStory": "I cut checkout latency by 40%.", "rationale": "Adds a metric."}))
    parsed = client.post("/api/gemini/improve", json=payload)
    assert parsed.status_code == 200
    assert parsed.json()["improvedStory"] == "I cut checkout latency by 40%."
    assert parsed.json()["parsed"] is True

    reply_with(monkeypatch, "\nBetter story line.\nMore prose.")
    fallback = client.post("/api/gemini/improve", json=payload)
    assert fallback.status_code == 200
    assert fallback.json()["improvedStory"] == "Better story line."
    assert fallback.json()["rationale"] == main_module.UNPARSED_RATIONALE
    assert fallback.json()["parsed"] is False


def test_criteria_score_normalizes_and_falls_back(client: TestClient, monkeypatch) -> None:
    reply_with(
        monkeypatch,
        json.dumps(
            {
                "overallScore": 14,
                "criteriaScores": {"clarity": "7", "impact": None},
                "feedback": " Solid ",
                "strengths": ["Specific"],
                "improvements": [],
            }
        ),
    )
    resp = client.post("/api/gemini/score", json={"content": "My answer"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["overallScore"] == 10
    assert data["criteriaScores"] == {"clarity": 7, "impact": 0}
    assert data["feedback"] == "Solid"

    reply_with(monkeypatch, "cannot score")
    fallback = client.post("/api/gemini/score", json={"content": "My answer"})
    assert fallback.json()["parsed"] is False
    assert fallback.json()["data"]["overallScore"] == 0
    assert fallback.json()["data"]["improvements"] == [main_module.UNPARSED_SCORE_MESSAGE]


def test_abt_generate(client: TestClient, monkeypatch) -> None:
    reply_with(
        monkeypatch,
        json.dumps(
            {
                "accomplishment": "Led migration",
                "because": "Legacy stack was failing",
                "therefore": "Outages dropped 80%",
                "fullStory": "I led a migration...",
            }
        ),
    )
    resp = client.post("/api/abt/generate", json={"role": "SRE", "industry": "Media", "focus": "leadership"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["parsed"] is True
    assert data["accomplishment"] == "Led migration"
    assert data["fullStory"] == "I led a migration..."


def test_achievement_catalog(client: TestClient) -> None:
    resp = client.get("/api/abt/achievements")
    assert resp.status_code == 200
    assert [item["id"] for item in resp.json()["items"]][:2] == ["first_story", "story_scorer"]


def test_sessions_require_login(client: TestClient) -> None:
    resp = client.get("/api/sessions")
    assert resp.status_code == 401
    assert_error_shape(resp.json(), expected_code="AUTH_LOGIN_REQUIRED")


def test_sessions_open_when_login_not_required(client: TestClient, monkeypatch) -> None:
    monkeypatch.setenv("INTERVIEW_MANIAC_REQUIRE_LOGIN_FOR_SESSIONS", "false")
    headers = {"x-session-id": "anon-session-1"}
    created = client.post("/api/sessions", json=STORY, headers=headers)
    assert created.status_code == 200

    listed = client.get("/api/sessions", headers=headers)
    assert [item["id"] for item in listed.json()["items"]] == [created.json()["item"]["id"]]

    other = client.get("/api/sessions", headers={"x-session-id": "anon-session-2"})
    assert other.json()["items"] == []


def test_sessions_crud_and_owner_isolation(client: TestClient) -> None:
    headers = signup(client)

    created = client.post("/api/sessions", json={**STORY, "generatedStory": "Full story"}, headers=headers)
    assert created.status_code == 200
    item = created.json()["item"]
    assert item["generatedStory"] == "Full story"
    assert item["lastScore"] is None

    detail = client.get(f"/api/sessions/{item['id']}", headers=headers)
    assert detail.status_code == 200
    assert detail.json()["item"]["achievement"] == STORY["achievement"]

    listed = client.get("/api/sessions", headers=headers, params={"limit": 1})
    assert len(listed.json()["items"]) == 1

    other_client = TestClient(app, raise_server_exceptions=False)
    other_headers = signup(other_client, email="bob@example.com")
    missing = other_client.get(f"/api/sessions/{item['id']}", headers=other_headers)
    assert missing.status_code == 404
    assert_error_shape(missing.json(), expected_code="NOT_FOUND")


def test_sessions_reject_incomplete_story(client: TestClient) -> None:
    headers = signup(client)
    resp = client.post("/api/sessions", json={**STORY, "achievement": ""}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["missingFields"] == ["achievement"]


def test_score_with_session_id_attaches_score(client: TestClient, fake_gemini: list[str]) -> None:
    headers = signup(client)
    session_id = client.post("/api/sessions", json=STORY, headers=headers).json()["item"]["id"]

    resp = client.post("/api/abt/score", json={**STORY, "sessionId": session_id}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["sessionId"] == str(session_id)

    detail = client.get(f"/api/sessions/{session_id}", headers=headers).json()["item"]
    assert detail["lastScore"]["totalScore"] == 23
    assert detail["lastScore"]["category"] == "Good"


def test_score_batch_labels_each_session(client: TestClient, monkeypatch) -> None:
    headers = signup(client)
    first = client.post("/api/sessions", json=STORY, headers=headers).json()["item"]["id"]
    second = client.post("/api/sessions", json={**STORY, "role": "Failing Role"}, headers=headers).json()["item"]["id"]

    def fake_call(prompt: str, **kwargs) -> str:
        if "Failing Role" in prompt:
            raise gemini_module.GeminiError("Gemini API error: 500")
        return json.dumps(GOOD_RUBRIC)

    monkeypatch.setattr(gemini_module, "call_gemini", fake_call)

    resp = client.post("/api/sessions/score-batch", json={"sessionIds": [first, second]}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()
    assert data["succeeded"] == 1
    assert data["failed"] == 1
    assert [item["sessionId"] for item in data["items"]] == [str(first), str(second)]
    assert data["items"][0]["totalScore"] == 23
    assert data["items"][1]["ok"] is False
    assert data["items"][1]["error"]

    stored = client.get(f"/api/sessions/{first}", headers=headers).json()["item"]
    assert stored["lastScore"]["totalScore"] == 23
    failed = client.get(f"/api/sessions/{second}", headers=headers).json()["item"]
    assert failed["lastScore"] is None


def test_progress_actions_accumulate_per_session(client: TestClient) -> None:
    headers = {"x-session-id": "progress-session"}

    empty = client.get("/api/progress", headers=headers)
    assert empty.status_code == 200
    assert empty.json()["record"]["points"] == 0
    assert empty.json()["record"]["level"] == 1

    first = client.post("/api/progress/actions", json={"action": "save", "today": "2026-10-17"}, headers=headers)
    assert first.status_code == 200
    data = first.json()
    assert data["pointsEarned"] == 10
    assert data["newlyUnlocked"] == ["first_story"]
    assert data["actionLabel"] == "Story Saved"

    second = client.post("/api/progress/actions", json={"action": "generate", "today": "2026-10-18"}, headers=headers)
    data = second.json()
    assert data["newlyUnlocked"] == []
    assert data["record"]["points"] == 15
    assert data["record"]["streakDays"] == 2
    assert data["counters"] == {"generate": 1, "score": 0, "save": 1, "voice_transcript": 0}
    assert data["pointsToNextLevel"] == 85

    other = client.get("/api/progress", headers={"x-session-id": "another-session"})
    assert other.json()["record"]["points"] == 0


def test_progress_follows_user_when_logged_in(client: TestClient) -> None:
    headers = signup(client)
    client.post("/api/progress/actions", json={"action": "score"}, headers={**headers, "x-session-id": "device-a"})

    resp = client.get("/api/progress", headers={**headers, "x-session-id": "device-b"})
    assert resp.json()["record"]["points"] == 5
    assert resp.json()["counters"]["score"] == 1


def test_unknown_action_is_validation_error(client: TestClient) -> None:
    resp = client.post("/api/progress/actions", json={"action": "dance"})
    assert resp.status_code == 422
    assert_error_shape(resp.json(), expected_code="VALIDATION_ERROR")


def test_rate_limit_applies_to_model_calls(client: TestClient, monkeypatch, fake_gemini: list[str]) -> None:
    monkeypatch.setattr(main_module, "RATE_LIMITER", main_module.SessionRateLimiter(limit=2, window_seconds=60))
    headers = {"x-session-id": "rate-session"}

    for _ in range(2):
        ok = client.post("/api/gemini/generate", json={"prompt": "hi"}, headers=headers)
        assert ok.status_code == 200
        assert ok.headers["x-ratelimit-limit"] == "2"

    limited = client.post("/api/gemini/generate", json={"prompt": "hi"}, headers=headers)
    assert limited.status_code == 429
    assert_error_shape(limited.json(), expected_code="TOO_MANY_REQUESTS")
    assert len(fake_gemini) == 2


def test_metrics_snapshot_counts_errors(client: TestClient) -> None:
    client.get("/health")
    client.post("/api/progress/actions", json={"action": "dance"})

    resp = client.get("/api/metrics/snapshot")
    assert resp.status_code == 200
    data = resp.json()
    assert data["requestTotal"] >= 2
    assert data["pathCounts"]["/health"] == 1
    assert data["errorCounts"]["VALIDATION_ERROR"] == 1
    assert data["latency"]["/health"]["count"] == 1


def test_unhandled_exception_maps_to_internal_error(client: TestClient, monkeypatch) -> None:
    def explode(**kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(main_module, "load_progress", explode)
    resp = client.get("/api/progress")
    assert resp.status_code == 500
    assert_error_shape(resp.json(), expected_code="INTERNAL_ERROR")
