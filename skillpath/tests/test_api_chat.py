"""
End-to-end API tests for /api/chat/send, /api/chat/status and /api/assessments/latest.

Tests the full stack: HTTP request -> rate limiting -> session store -> background
generation (scripted generator) -> persistence gate -> SQLite -> HTTP response.
"""
from __future__ import annotations

import pytest
from httpx import AsyncClient

from skillpath.config import settings

SEND_BODY = {"skillId": "python-programming", "message": "I write small scripts and use pip."}


async def _send(client: AsyncClient, token: str | None = None, **headers) -> str:
    if token:
        headers["Authorization"] = f"Bearer {token}"
    response = await client.post("/api/chat/send", json=SEND_BODY, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["sessionId"]


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    response = await client.get("/api/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["version"] == settings.app_version
    assert "timestamp" in body


# ---------------------------------------------------------------------------
# Scenario A: send -> poll -> done
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_then_poll_reaches_done(app, client: AsyncClient) -> None:
    session_id = await _send(client)
    assert session_id.startswith("sess_")

    await app.state.runner.wait_idle()
    response = await client.get("/api/chat/status", params={"sessionId": session_id})

    assert response.status_code == 200
    body = response.json()
    assert body["sessionId"] == session_id
    assert body["status"] == "done"
    assert body["text"]
    assert isinstance(body["updatedAt"], int)
    assert body["error"] is None
    assert response.headers["cache-control"] == "no-store"
    assert response.headers["etag"].startswith('W/"')


@pytest.mark.asyncio
async def test_status_returns_304_for_matching_etag(app, client: AsyncClient) -> None:
    session_id = await _send(client)
    await app.state.runner.wait_idle()

    first = await client.get("/api/chat/status", params={"sessionId": session_id})
    etag = first.headers["etag"]
    second = await client.get(
        "/api/chat/status", params={"sessionId": session_id}, headers={"If-None-Match": etag},
    )

    assert second.status_code == 304
    assert second.content == b""
    assert second.headers["etag"] == etag


@pytest.mark.asyncio
async def test_stale_etag_gets_full_body(app, client: AsyncClient) -> None:
    sessions = app.state.sessions
    session_id = sessions.create().session_id
    queued = await client.get("/api/chat/status", params={"sessionId": session_id})
    assert queued.json()["status"] == "queued"

    sessions.set_running(session_id)
    sessions.append_partial(session_id, "Thinking")
    response = await client.get(
        "/api/chat/status",
        params={"sessionId": session_id},
        headers={"If-None-Match": queued.headers["etag"]},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "partial"
    assert response.json()["text"] == "Thinking"
    assert response.headers["etag"] != queued.headers["etag"]


@pytest.mark.asyncio
async def test_locale_header_selects_arabic_prompt(app, client: AsyncClient, fake_generator) -> None:
    await _send(client, **{"x-locale": "ar"})
    await app.state.runner.wait_idle()
    assert "أنت مساعد" in fake_generator.system_prompts[-1]


# ---------------------------------------------------------------------------
# Input errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_malformed_json_is_400(client: AsyncClient) -> None:
    response = await client.post(
        "/api/chat/send", content=b"{not json", headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{"skillId": "python-programming"}, {"message": "hi"}, {"skillId": "", "message": "hi"}, ["not", "an", "object"]],
)
async def test_send_invalid_body_is_400(client: AsyncClient, body) -> None:
    response = await client.post("/api/chat/send", json=body)
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "BAD_REQUEST"
    assert error["message"].startswith("Invalid request body")


@pytest.mark.asyncio
async def test_status_without_session_id_is_400(client: AsyncClient) -> None:
    response = await client.get("/api/chat/status")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_status_unknown_session_is_404(client: AsyncClient) -> None:
    response = await client.get("/api/chat/status", params={"sessionId": "sess_missing"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_send_is_rate_limited_with_retry_after(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "send_rate_limit", 2)

    for _ in range(2):
        await _send(client)
    response = await client.post("/api/chat/send", json=SEND_BODY)

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMITED"
    assert int(response.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_rate_limit_is_per_caller(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "send_rate_limit", 1)

    await _send(client, **{"X-Forwarded-For": "203.0.113.1"})
    await _send(client, **{"X-Forwarded-For": "203.0.113.2"})
    response = await client.post(
        "/api/chat/send", json=SEND_BODY, headers={"X-Forwarded-For": "203.0.113.1"},
    )
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_status_is_rate_limited(app, client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setattr(settings, "status_rate_limit", 1)
    session_id = await _send(client)

    ok = await client.get("/api/chat/status", params={"sessionId": session_id})
    limited = await client.get("/api/chat/status", params={"sessionId": session_id})

    assert ok.status_code == 200
    assert limited.status_code == 429


# ---------------------------------------------------------------------------
# Persistence through the API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authenticated_send_persists_assessment(app, client: AsyncClient) -> None:
    await _send(client, token="tok-1")
    await app.state.runner.wait_idle()

    response = await client.get(
        "/api/assessments/latest",
        params={"skillId": "python-programming"},
        headers={"Authorization": "Bearer tok-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["assessment"]["skillId"] == "python-programming"
    assert body["assessment"]["result"]["level"] == 4
    modules = body["learningPath"]["modules"]
    assert body["learningPath"]["status"] == "active"
    assert modules[0]["resourceUrl"] == "https://docs.python.org/3/tutorial/index.html"
    assert "resourceUrl" not in modules[2]
    assert all(3 <= len(m["searchKeywords"]) <= 10 for m in modules)


@pytest.mark.asyncio
async def test_latest_assessment_requires_token(client: AsyncClient) -> None:
    response = await client.get("/api/assessments/latest", params={"skillId": "python-programming"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_latest_assessment_is_404_for_other_caller(app, client: AsyncClient) -> None:
    await _send(client, token="tok-1")
    await app.state.runner.wait_idle()

    response = await client.get(
        "/api/assessments/latest",
        params={"skillId": "python-programming"},
        headers={"Authorization": "Bearer tok-2"},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_anonymous_send_does_not_persist(app, client: AsyncClient) -> None:
    session_id = await _send(client)
    await app.state.runner.wait_idle()

    assert app.state.sessions.get(session_id).assessment_persisted is False


# ---------------------------------------------------------------------------
# Conversation transcript
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_authenticated_send_returns_conversation_and_records_transcript(app, client: AsyncClient) -> None:
    auth = {"Authorization": "Bearer tok-1"}
    first = await client.post("/api/chat/send", json=SEND_BODY, headers=auth)
    conversation_id = first.json()["conversationId"]
    await app.state.runner.wait_idle()
    second = await client.post(
        "/api/chat/send",
        json={**SEND_BODY, "message": "I also use pytest.", "conversationId": conversation_id},
        headers=auth,
    )
    await app.state.runner.wait_idle()

    response = await client.get(f"/api/conversations/{conversation_id}/messages", headers=auth)

    assert conversation_id
    assert second.json()["conversationId"] == conversation_id
    assert response.status_code == 200
    body = response.json()
    assert body["conversationId"] == conversation_id
    messages = body["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant", "user", "assistant"]
    assert messages[0]["content"] == SEND_BODY["message"]
    assert "```json" in messages[1]["content"]
    assert [m["questionNumber"] for m in messages] == [None, 1, None, 2]


@pytest.mark.asyncio
async def test_anonymous_send_has_no_conversation(client: AsyncClient) -> None:
    response = await client.post("/api/chat/send", json=SEND_BODY)
    assert response.status_code == 200
    assert response.json()["conversationId"] is None


@pytest.mark.asyncio
async def test_conversation_messages_are_owner_scoped(app, client: AsyncClient) -> None:
    sent = await client.post("/api/chat/send", json=SEND_BODY, headers={"Authorization": "Bearer tok-1"})
    conversation_id = sent.json()["conversationId"]
    await app.state.runner.wait_idle()

    anonymous = await client.get(f"/api/conversations/{conversation_id}/messages")
    foreign = await client.get(
        f"/api/conversations/{conversation_id}/messages", headers={"Authorization": "Bearer tok-2"},
    )

    assert anonymous.status_code == 401
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Learning-path progress
# ---------------------------------------------------------------------------

async def _enrolled(app, client: AsyncClient, token: str = "tok-1") -> dict:
    await _send(client, token=token)
    await app.state.runner.wait_idle()
    response = await client.get(
        "/api/assessments/latest",
        params={"skillId": "python-programming"},
        headers={"Authorization": f"Bearer {token}"},
    )
    return response.json()["learningPath"]


async def _progress(client: AsyncClient, action: str, body: dict, token: str | None = "tok-1"):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return await client.post(f"/api/learning-paths/{action}", json=body, headers=headers)


@pytest.mark.asyncio
async def test_completing_every_module_completes_path(app, client: AsyncClient) -> None:
    path = await _enrolled(app, client)
    module_ids = [m["id"] for m in path["modules"]]

    responses = [
        await _progress(client, "complete-module", {"learningPathId": path["learningPathId"], "moduleId": mid})
        for mid in module_ids
    ]

    assert all(r.status_code == 200 for r in responses)
    assert responses[0].json()["status"] == "active"
    final = responses[-1].json()
    assert final["status"] == "completed"
    assert final["completedModuleIds"] == module_ids


@pytest.mark.asyncio
async def test_incomplete_module_by_skill_reopens_path(app, client: AsyncClient) -> None:
    path = await _enrolled(app, client)
    for module in path["modules"]:
        await _progress(client, "complete-module", {"skillId": "python-programming", "moduleId": module["id"]})

    response = await _progress(client, "incomplete-module", {"skillId": "python-programming", "moduleId": "m1"})

    assert response.status_code == 200
    assert response.json()["status"] == "active"
    assert "m1" not in response.json()["completedModuleIds"]


@pytest.mark.asyncio
async def test_unenroll_archives_current_path(app, client: AsyncClient) -> None:
    path = await _enrolled(app, client)

    response = await _progress(client, "unenroll", {"learningPathId": path["learningPathId"]})
    latest = await client.get(
        "/api/assessments/latest",
        params={"skillId": "python-programming"},
        headers={"Authorization": "Bearer tok-1"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "archived"
    assert latest.json()["learningPath"] is None


@pytest.mark.asyncio
async def test_progress_requires_token(client: AsyncClient) -> None:
    response = await _progress(client, "complete-module", {"skillId": "python-programming", "moduleId": "m1"}, token=None)
    assert response.status_code == 401


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [{"moduleId": "m1"}, {"skillId": "python-programming"}, {"learningPathId": "", "moduleId": "m1"}],
)
async def test_progress_invalid_body_is_400(client: AsyncClient, body) -> None:
    response = await _progress(client, "complete-module", body)
    assert response.status_code == 400
    assert response.json()["error"]["message"].startswith("Invalid request body")


@pytest.mark.asyncio
async def test_progress_unknown_module_or_foreign_path_is_404(app, client: AsyncClient) -> None:
    path = await _enrolled(app, client)

    unknown_module = await _progress(
        client, "complete-module", {"learningPathId": path["learningPathId"], "moduleId": "m99"},
    )
    foreign = await _progress(
        client, "complete-module", {"learningPathId": path["learningPathId"], "moduleId": "m1"}, token="tok-2",
    )
    no_path = await _progress(client, "unenroll", {"skillId": "data-analysis"})

    assert unknown_module.status_code == 404
    assert unknown_module.json()["error"]["message"] == "Module not found in path"
    assert foreign.status_code == 404
    assert foreign.json()["error"]["message"] == "Learning path not found"
    assert no_path.status_code == 404
