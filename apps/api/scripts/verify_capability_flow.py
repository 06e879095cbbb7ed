import asyncio
import os
import sys
import uuid

from httpx import AsyncClient, ASGITransport

# Add parent dir to path to find main
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app
from services.session_token import create_session_token


async def verify_capability_flow_async():
    print("🔍 Verifying capability flow: claim -> token -> single use...")

    user_id = f"verify-{uuid.uuid4().hex[:8]}"
    session = create_session_token(user_id)["token"]
    auth_headers = {"Authorization": f"Bearer {session}"}

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        # 1. Unlimited messaging grant (dev route, non-production only)
        grant = await client.post("/dev/grants/messages-unlimited", headers=auth_headers)
        if grant.status_code != 200:
            print(f"❌ Dev grant failed: {grant.text}")
            return

        # 2. Entitlement claim
        claim_response = await client.get("/entitlements-claim", headers=auth_headers)
        if claim_response.status_code != 200:
            print(f"❌ Claim issuance failed: {claim_response.text}")
            return
        claim = claim_response.json()
        print(f"📜 Claim for plan={claim['plan']} features={claim['features']}")

        # 3. Exchange for a capability token bound to POST /messages
        token_response = await client.post(
            "/capability-token",
            headers={"Authorization": f"Bearer {claim['claim']}"},
            json={"feature": "messaging.unlimited", "method": "POST", "path": "/messages"},
        )
        if token_response.status_code != 200:
            print(f"❌ Token exchange failed: {token_response.text}")
            return
        token = token_response.json()["token"]

        # 4. First use succeeds, replay is rejected
        message_headers = {**auth_headers, "X-Capability-Token": token}
        first = await client.post("/messages", headers=message_headers, json={"content": "hello"})
        second = await client.post("/messages", headers=message_headers, json={"content": "hello again"})

        print(f"✅ First use: {first.status_code} {first.json().get('usage')}")
        print(f"🔒 Replay: {second.status_code} {second.json().get('error')}")
        assert first.status_code == 200
        assert second.status_code == 401
        assert second.json()["error"] == "replay_or_expired"


if __name__ == "__main__":
    asyncio.run(verify_capability_flow_async())
