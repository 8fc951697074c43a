"""
tests.test_signaling_ws
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 信令端点与 REST 接口的集成测试（FastAPI ``TestClient``）。
"""
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture()
def client() -> Iterator[TestClient]:
    # with 语句触发 lifespan，创建信令系统
    with TestClient(app) as c:
        yield c


class TestSignalingWebSocket:
    """测试 ``/ws/signal`` 的完整信令流程。"""

    def test_hello_then_start_call(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "hello"
            assert len(hello["party_id"]) == 32

            ws.send_json({"type": "start_call"})
            started = ws.receive_json()
            assert started["type"] == "call_started"
            assert len(started["key"]) == 8

    def test_offer_answer_round_trip(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as b:
            b_id = b.receive_json()["party_id"]
            b.send_json({"type": "start_call"})
            key = b.receive_json()["key"]

            with client.websocket_connect("/ws/signal") as v:
                v_id = v.receive_json()["party_id"]
                v.send_json({"type": "join_viewer", "key": key})
                assert v.receive_json() == {"type": "joined", "key": key, "broadcaster": b_id}
                assert b.receive_json() == {"type": "viewer_joined", "viewer": v_id}

                offer = {"type": "offer", "sdp": "v=0 offer"}
                b.send_json({"type": "signal", "to": None, "payload": offer})
                assert v.receive_json() == {"type": "signal", "from": b_id, "payload": offer}

                answer = {"type": "answer", "sdp": "v=0 answer"}
                v.send_json({"type": "signal", "payload": answer})
                assert b.receive_json() == {"type": "signal", "from": v_id, "payload": answer}

                info = client.get(f"/api/sessions/{key}").json()
                assert info["code"] == 200
                assert info["data"]["state"] == "active"
                assert info["data"]["viewer_count"] == 1

            # 观众断开后主播收到 viewer_left
            assert b.receive_json() == {"type": "viewer_left", "viewer": v_id}

    def test_broadcaster_disconnect_closes_session(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as v:
            v.receive_json()
            with client.websocket_connect("/ws/signal") as b:
                b.receive_json()
                b.send_json({"type": "start_call"})
                key = b.receive_json()["key"]

                v.send_json({"type": "join_viewer", "key": key})
                assert v.receive_json()["type"] == "joined"
                assert b.receive_json()["type"] == "viewer_joined"

            assert v.receive_json() == {"type": "session_closed", "key": key}
            assert client.get(f"/api/sessions/{key}").status_code == 404

    def test_unknown_key(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as ws:
            ws.receive_json()
            ws.send_json({"type": "join_viewer", "key": "NoSuchK1"})

            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["kind"] == "UnknownKey"

    def test_request_ref_echoed_in_reply(self, client: TestClient) -> None:
        """``ref`` 原样出现在回复与错误里；signal 引发的错误不带 ``ref``。"""
        with client.websocket_connect("/ws/signal") as ws:
            ws.receive_json()

            ws.send_json({"type": "join_viewer", "key": "NoSuchK1", "ref": "r1"})
            assert ws.receive_json() == {
                "type": "error",
                "kind": "UnknownKey",
                "detail": "房间 NoSuchK1 不存在",
                "ref": "r1",
            }

            ws.send_json({"type": "signal", "payload": {"type": "offer", "sdp": "v=0"}})
            assert "ref" not in ws.receive_json()

            ws.send_json({"type": "start_call", "ref": "r2"})
            started = ws.receive_json()
            assert started["type"] == "call_started"
            assert started["ref"] == "r2"

    def test_malformed_messages_keep_connection_open(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as ws:
            ws.receive_json()

            ws.send_text("not json")
            assert ws.receive_json()["kind"] == "MalformedPayload"

            ws.send_json({"type": "signal", "payload": {"type": "bogus"}})
            assert ws.receive_json()["kind"] == "MalformedPayload"

            ws.send_json({"type": "dance"})
            assert ws.receive_json()["kind"] == "MalformedPayload"

            # 连接仍然可用
            ws.send_json({"type": "start_call"})
            assert ws.receive_json()["type"] == "call_started"


class TestRestApi:
    """测试会话查询与健康检查接口。"""

    def test_unknown_session_is_404(self, client: TestClient) -> None:
        response = client.get("/api/sessions/missing1")

        assert response.status_code == 404
        body = response.json()
        assert body["code"] == 404
        assert body["data"] is None

    def test_open_session_info(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/signal") as ws:
            ws.receive_json()
            ws.send_json({"type": "start_call"})
            key = ws.receive_json()["key"]

            body = client.get(f"/api/sessions/{key}").json()

        assert body["data"]["key"] == key
        assert body["data"]["state"] == "open"
        assert body["data"]["viewer_count"] == 0

    def test_health(self, client: TestClient) -> None:
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["environment"] == "test"
        assert body["sessions"] == 0
        assert body["connections"] == 0
