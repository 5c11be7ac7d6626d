#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import uuid
from typing import Any
from urllib import error, request

SAMPLE_STORY = {
    "role": "Backend Engineer",
    "industry": "Fintech",
    "achievement": "Cut payment latency by 40%",
    "because": "Checkout timeouts were costing conversions",
    "therefore": "Conversion rose 6% in a quarter",
}


def call(
    base_url: str,
    method: str,
    path: str,
    payload: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> tuple[int, dict[str, Any] | str]:
    body = None
    merged_headers = {"Accept": "application/json", **(headers or {})}
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        merged_headers["Content-Type"] = "application/json"

    req = request.Request(f"{base_url.rstrip('/')}{path}", data=body, headers=merged_headers, method=method)
    try:
        with request.urlopen(req, timeout=30) as resp:
            raw = resp.read().decode("utf-8")
            return resp.status, json.loads(raw) if raw and raw.startswith(("{", "[")) else raw
    except error.HTTPError as exc:
        raw = exc.read().decode("utf-8")
        parsed: dict[str, Any] | str
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = raw
        return exc.code, parsed


def check(name: str, status: int, body: Any, expected: set[int], failures: list[str]) -> None:
    ok = status in expected
    print(f"[{'OK' if ok else 'FAIL'}] {name}: {status}")
    if not ok:
        failures.append(f"{name}: expected {sorted(expected)}, got {status} {body}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Smoke test a running Interview Maniac API")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--with-gemini", action="store_true", help="also exercise endpoints that call Gemini")
    args = parser.parse_args()

    failures: list[str] = []
    session_headers = {"x-session-id": f"smoke-{uuid.uuid4().hex[:12]}"}

    status, body = call(args.base_url, "GET", "/health")
    check("health", status, body, {200}, failures)

    email = f"smoke-{uuid.uuid4().hex[:8]}@example.com"
    status, body = call(args.base_url, "POST", "/api/auth/signup", {"email": email, "password": "smoke-pass"})
    check("signup", status, body, {200}, failures)
    token = body.get("token", "") if isinstance(body, dict) else ""
    auth_headers = {**session_headers, "Authorization": f"Bearer {token}"}

    status, body = call(args.base_url, "GET", "/api/auth/me", headers=auth_headers)
    check("me", status, body, {200}, failures)

    status, body = call(args.base_url, "POST", "/api/sessions", SAMPLE_STORY, headers=auth_headers)
    check("save story", status, body, {200}, failures)
    story_id = body.get("item", {}).get("id") if isinstance(body, dict) else None

    status, body = call(args.base_url, "GET", "/api/sessions", headers=auth_headers)
    check("list stories", status, body, {200}, failures)

    status, body = call(args.base_url, "POST", "/api/abt/score", {**SAMPLE_STORY, "because": ""}, headers=auth_headers)
    check("score rejects blank field", status, body, {400}, failures)

    status, body = call(args.base_url, "POST", "/api/progress/actions", {"action": "save"}, headers=auth_headers)
    check("record action", status, body, {200}, failures)

    status, body = call(args.base_url, "GET", "/api/progress", headers=auth_headers)
    check("progress", status, body, {200}, failures)

    status, body = call(args.base_url, "GET", "/api/abt/achievements")
    check("achievements", status, body, {200}, failures)

    if args.with_gemini:
        status, body = call(
            args.base_url,
            "POST",
            "/api/abt/score",
            {**SAMPLE_STORY, "sessionId": story_id},
            headers=auth_headers,
        )
        check("score story", status, body, {200}, failures)
        if isinstance(body, dict) and status == 200:
            print(f"  totalScore={body.get('totalScore')} category={body.get('category')}")

        status, body = call(
            args.base_url,
            "POST",
            "/api/gemini/generate",
            {"prompt": "backend engineer", "type": "interview-questions"},
            headers=auth_headers,
        )
        check("generate questions", status, body, {200}, failures)

    status, body = call(args.base_url, "POST", "/api/auth/logout", headers=auth_headers)
    check("logout", status, body, {200}, failures)

    status, body = call(args.base_url, "GET", "/api/metrics/snapshot")
    check("metrics", status, body, {200}, failures)

    if failures:
        print("\n".join(failures), file=sys.stderr)
        return 1
    print("smoke passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
