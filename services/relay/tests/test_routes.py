import httpx
import jwt

from services.relay.tests.mock_upstream import RESPONSE_URL, parse_sse_frames, sse_body

QUESTION = {
    "question": "How do I write a business rule?",
    "type": "business_rule",
    "aiModel": "gpt-4o",
    "sessionkey": "session_1700000000000_abcdefghi",
}


def _streaming_upstream(records):
    return lambda request: httpx.Response(200, content=sse_body(records))


def _polling_upstream(message="Use a before-insert rule."):
    def handler(request):
        if str(request.url) == RESPONSE_URL:
            return httpx.Response(200, json={"message": message})
        return httpx.Response(200, json={"key": "work-1"})

    return handler


def test_healthz(make_client):
    with make_client(_polling_upstream()) as client:
        resp = client.get("/healthz")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["cancel_store"] == "memory"
    assert data["active_sessions"] == 0


def test_security_and_request_id_headers(make_client):
    with make_client(_polling_upstream()) as client:
        resp = client.get("/healthz", headers={"X-Request-Id": "req-123"})
    assert resp.headers["X-Request-Id"] == "req-123"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_stream_relays_events(make_client):
    records = [{"type": "begin"}, {"type": "chunk", "content": "Hello"}, {"type": "chunk", "content": " world"}, {"type": "end"}]
    with make_client(_streaming_upstream(records)) as client:
        resp = client.post("/submit-question-stream", json=QUESTION)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"
    assert resp.headers["x-accel-buffering"] == "no"
    events = parse_sse_frames(resp.text)
    assert [e["type"] for e in events] == ["connecting", "begin", "chunk", "chunk", "complete"]
    assert "".join(e["content"] for e in events if e["type"] == "chunk") == "Hello world"
    assert all(e["timestamp"].endswith("Z") for e in events)


def test_stream_reports_upstream_failure_as_error_event(make_client):
    with make_client(lambda request: httpx.Response(503, text="maintenance")) as client:
        resp = client.post("/submit-question-stream", json=QUESTION)

    assert resp.status_code == 200
    events = parse_sse_frames(resp.text)
    assert [e["type"] for e in events] == ["connecting", "error"]
    assert events[-1]["content"] == "Upstream returned HTTP 503: maintenance"


def test_stream_rejects_invalid_request(make_client):
    with make_client(_streaming_upstream([])) as client:
        resp = client.post("/submit-question-stream", json={"question": "q"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "error": "Missing required fields: question and type are required"}


def test_stream_rejects_invalid_agent(make_client):
    body = dict(QUESTION, agentModels=[{"agent": "nope", "model": "m"}])
    with make_client(_streaming_upstream([])) as client:
        resp = client.post("/submit-question-stream", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid agent name: nope")


def test_stream_rejects_malformed_json(make_client):
    with make_client(_streaming_upstream([])) as client:
        resp = client.post(
            "/submit-question-stream", content=b"{not json", headers={"Content-Type": "application/json"}
        )
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_stream_without_configuration(make_client):
    with make_client(_streaming_upstream([]), upstream_url=None) as client:
        resp = client.post("/submit-question-stream", json=QUESTION)
    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Server configuration error"}


def test_auth_required_when_secret_configured(make_client):
    with make_client(_streaming_upstream([{"type": "end"}]), jwt_secret="s3cret") as client:
        resp = client.post("/submit-question-stream", json=QUESTION)
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Unauthorized"}

        client.cookies.set("auth-token", jwt.encode({"username": "other"}, "wrong-secret", algorithm="HS256"))
        assert client.post("/submit-question-stream", json=QUESTION).status_code == 401

        client.cookies.set("auth-token", jwt.encode({"username": "dev"}, "s3cret", algorithm="HS256"))
        resp = client.post("/submit-question-stream", json=QUESTION)
        assert resp.status_code == 200
        assert [e["type"] for e in parse_sse_frames(resp.text)] == ["connecting", "complete"]


def test_bearer_token_accepted(make_client):
    token = jwt.encode({"username": "dev"}, "s3cret", algorithm="HS256")
    with make_client(_polling_upstream(), jwt_secret="s3cret") as client:
        resp = client.post("/submit-question", json=QUESTION, headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 200


def test_long_poll_returns_answer(make_client):
    with make_client(_polling_upstream("42")) as client:
        resp = client.post("/submit-question", json=QUESTION)

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["message"] == "42"
    assert body["data"]["type"] == "business_rule"
    assert body["data"]["sessionkey"] == QUESTION["sessionkey"]


def test_long_poll_generates_session_key_when_missing(make_client):
    body = {k: v for k, v in QUESTION.items() if k != "sessionkey"}
    with make_client(_polling_upstream()) as client:
        resp = client.post("/submit-question", json=body)
    assert resp.status_code == 200
    assert resp.json()["data"]["sessionkey"].startswith("session_")


def test_long_poll_cancelled_returns_499(make_client):
    holder = {}

    def handler(request):
        if str(request.url) == RESPONSE_URL:
            # cancel arrives while the first poll is in flight
            holder["client"].app.state.registry.cancel(QUESTION["sessionkey"])
            return httpx.Response(200, json={"state": "processing"})
        return httpx.Response(200, json={"key": "work-1"})

    with make_client(handler, poll_interval=5.0) as client:
        holder["client"] = client
        resp = client.post("/submit-question", json=QUESTION)

    assert resp.status_code == 499
    assert resp.json() == {"success": False, "error": "Request was cancelled"}


def test_cancel_of_finished_exchange_does_not_cancel_the_next(make_client):
    poll = _polling_upstream()
    stream = _streaming_upstream([{"type": "chunk", "content": "still here"}, {"type": "end"}])

    def handler(request):
        if request.headers.get("accept") == "text/event-stream":
            return stream(request)
        return poll(request)

    with make_client(handler) as client:
        assert client.post("/submit-question", json=QUESTION).status_code == 200
        assert client.post("/cancel-request", json={"sessionkey": QUESTION["sessionkey"]}).status_code == 200
        resp = client.post("/submit-question", json=QUESTION)
        assert client.post("/cancel-request", json={"sessionkey": QUESTION["sessionkey"]}).status_code == 200
        streamed = client.post("/submit-question-stream", json=QUESTION)

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    events = parse_sse_frames(streamed.text)
    assert [e["type"] for e in events] == ["connecting", "chunk", "complete"]
    assert events[1]["content"] == "still here"


def test_long_poll_upstream_failure_returns_500(make_client):
    def handler(request):
        if str(request.url) == RESPONSE_URL:
            return httpx.Response(502, json={"message": "bad gateway"})
        return httpx.Response(200, json={"key": "work-1"})

    with make_client(handler) as client:
        resp = client.post("/submit-question", json=QUESTION)
    assert resp.status_code == 500
    assert resp.json()["success"] is False
    assert "bad gateway" in resp.json()["error"]


def test_long_poll_timeout_returns_500(make_client):
    def handler(request):
        if str(request.url) == RESPONSE_URL:
            return httpx.Response(200, json={"state": "processing"})
        return httpx.Response(200, json={"key": "work-1"})

    with make_client(handler, poll_timeout=0.05) as client:
        resp = client.post("/submit-question", json=QUESTION)
    assert resp.status_code == 500
    assert resp.json()["error"].startswith("Timeout: No response received")


def test_cancel_unknown_session_still_succeeds(make_client):
    with make_client(_polling_upstream()) as client:
        resp = client.post("/cancel-request", json={"sessionkey": "session_does_not_exist"})
        again = client.post("/cancel-request", json={"sessionkey": "session_does_not_exist"})
    assert resp.status_code == 200
    assert resp.json()["success"] is True
    assert again.json() == resp.json()


def test_cancel_requires_session_key(make_client):
    with make_client(_polling_upstream()) as client:
        resp = client.post("/cancel-request", json={})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
