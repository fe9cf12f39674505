from __future__ import annotations

import asyncio
import os
import time
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import httpx


def _assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def _auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000")
    run_id = uuid4().hex[:8]
    async with httpx.AsyncClient(base_url=base_url, timeout=15.0) as client:
        await _wait_ok(client, "/healthz")
        await _wait_ok(client, "/readyz")

        tenant_resp = await client.post("/api/identity/tenants", json={"name": f"smoke-{run_id}"})
        _assert_status(tenant_resp, 201)
        tenant_id = tenant_resp.json()["id"]
        _assert_status(
            await client.post(
                "/api/identity/bootstrap-admin",
                json={"tenant_id": tenant_id, "username": "admin", "password": run_id},
            ),
            201,
        )
        login_resp = await client.post(
            "/api/identity/dev-login",
            json={"tenant_id": tenant_id, "username": "admin", "password": run_id},
        )
        _assert_status(login_resp, 200)
        headers = _auth_headers(login_resp.json()["access_token"])

        user_resp = await client.post(
            "/api/identity/users",
            json={"username": "holder", "password": run_id, "full_name": "Smoke Holder"},
            headers=headers,
        )
        _assert_status(user_resp, 201)

        warranty_end = (datetime.now(UTC) + timedelta(days=30)).date().isoformat()
        asset_resp = await client.post(
            "/api/assets",
            json={"device_type": "LAPTOP", "manufacturer": "Lenovo", "warranty_end_date": warranty_end},
            headers=headers,
        )
        _assert_status(asset_resp, 201)
        asset_id = asset_resp.json()["id"]

        assign_resp = await client.post(
            f"/api/assets/{asset_id}/assign",
            json={"user_id": user_resp.json()["id"]},
            headers=headers,
        )
        _assert_status(assign_resp, 201)

        scan_resp = await client.post("/api/warranty/scan", json={}, headers=headers)
        _assert_status(scan_resp, 200)
        if scan_resp.json()["created_alerts"] < 1:
            raise RuntimeError(f"expected a warranty alert, got {scan_resp.json()}")

        return_resp = await client.post(
            f"/api/assignments/{assign_resp.json()['id']}/return",
            json={"condition": "GOOD"},
            headers=headers,
        )
        _assert_status(return_resp, 200)
    print(f"smoke ok for tenant {tenant_id}")


if __name__ == "__main__":
    asyncio.run(run())
