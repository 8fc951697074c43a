import asyncio
import json

import httpx
from websockets.asyncio.client import connect

BASE_URL = 'http://127.0.0.1:8000'
WS_URL = 'ws://127.0.0.1:8000/ws/signal'


async def recv_json(websocket, timeout=2.0):
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))


async def check_call_flow():
    print("="*50)
    print(" 验证信令流程: 开播 -> 加入 -> offer -> answer ")
    print("="*50)

    async with connect(WS_URL) as broadcaster, connect(WS_URL) as viewer:
        b_id = (await recv_json(broadcaster))["party_id"]
        v_id = (await recv_json(viewer))["party_id"]
        print(f"主播: {b_id}  观众: {v_id}")

        await broadcaster.send(json.dumps({"type": "start_call"}))
        key = (await recv_json(broadcaster))["key"]
        print(f"✅ 房间密钥: {key}")

        await viewer.send(json.dumps({"type": "join_viewer", "key": key}))
        print(f"   观众收到: {await recv_json(viewer)}")
        print(f"   主播收到: {await recv_json(broadcaster)}")

        await broadcaster.send(json.dumps({
            "type": "signal", "to": None,
            "payload": {"type": "offer", "sdp": "v=0 smoke-offer"},
        }))
        offer = await recv_json(viewer)
        print(f"   观众收到 offer: {offer['payload']['sdp']}")

        await viewer.send(json.dumps({
            "type": "signal",
            "payload": {"type": "answer", "sdp": "v=0 smoke-answer"},
        }))
        answer = await recv_json(broadcaster)
        print(f"   主播收到 answer: {answer['payload']['sdp']}")

        async with httpx.AsyncClient() as client:
            resp = await client.get(f'{BASE_URL}/api/sessions/{key}')
            print(f"   会话状态: {resp.json()}")

        await broadcaster.send(json.dumps({"type": "leave"}))
        closed = await recv_json(viewer)
        if closed.get("type") == "session_closed":
            print("✅ 成功: 主播离开后观众收到 session_closed")
        else:
            print(f"❌ 失败: 观众收到 {closed}")


async def check_rest_rate_limit():
    print("\n" + "="*50)
    print(" 验证 REST API 限流 (期望: 10/second) ")
    print("="*50)

    url = f'{BASE_URL}/api/sessions/NOSUCHK1'
    print(f"请求 {url} 12 次...")

    async with httpx.AsyncClient() as client:
        responses = []
        for _ in range(12):
            try:
                resp = await client.get(url)
                responses.append(resp.status_code)
            except httpx.HTTPError as e:
                print(f"请求失败: {e}")

        print(f"状态码返回: {responses}")

        if 429 in responses:
            print("✅ 成功: 触发了 HTTP 429 Too Many Requests 限流！")
        else:
            print("❌ 失败: 没有触发 429 限流，或服务器未启动。")


async def main():
    print("🟢 开始执行信令中继冒烟验证...\n")
    print("要求: 在运行本脚本前，请确保主程序服务已经在 http://127.0.0.1:8000 运行。\n")

    try:
        await check_call_flow()
    except (OSError, asyncio.TimeoutError) as e:
        print(f"WebSocket 遇到了错误，请确认服务已启动: {e}")
    await check_rest_rate_limit()

    print("\n🏁 验证结束。")


if __name__ == "__main__":
    asyncio.run(main())
