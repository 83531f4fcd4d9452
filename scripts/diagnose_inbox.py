#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.parse
import urllib.request
from collections import Counter
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    candidate = (explicit_value or os.getenv("INBOX_API_BASE_URL", "") or "http://localhost:8000").strip()
    if candidate.endswith("/inbox"):
        return candidate
    prefix = os.getenv("INBOX_API_PREFIX", "/api/v1").strip().rstrip("/")
    return f"{candidate.rstrip('/')}{prefix}/inbox"


def _get_json(base_url: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    query = f"?{urllib.parse.urlencode(params)}" if params else ""
    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}{query}",
        headers={"Accept": "application/json"},
        method="GET",
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"GET {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Summarize how a running inbox routes its conversations across the configured numbers."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help="Host root (e.g. http://localhost:8000) or full prefix (e.g. http://localhost:8000/api/v1/inbox).",
    )
    parser.add_argument("--agent-id", default=None, help="Agent id passed to /conversations.")
    parser.add_argument("--limit", type=int, default=50, help="Conversations to inspect (1-100, default 50).")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON.")
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    if args.limit < 1 or args.limit > 100:
        raise SystemExit("--limit must be between 1 and 100")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    numbers = _get_json(api_base_url, "numbers").get("items")
    if not isinstance(numbers, list):
        raise SystemExit("invalid /numbers response: missing items[]")

    params: dict[str, Any] = {"limit": args.limit}
    if args.agent_id:
        params["agent_id"] = args.agent_id
    conversations = _get_json(api_base_url, "conversations", params).get("items")
    if not isinstance(conversations, list):
        raise SystemExit("invalid /conversations response: missing items[]")

    routed: Counter[str] = Counter()
    unrouted_addresses: Counter[str] = Counter()
    failed: list[str] = []
    for item in conversations:
        if item.get("resolution_failed"):
            failed.append(str(item.get("id")))
        number_id = item.get("number_id")
        if number_id:
            routed[str(number_id)] += 1
        else:
            unrouted_addresses[str(item.get("proxy_address") or "<none>")] += 1

    summary = {
        "api_base_url": api_base_url,
        "configured_numbers": [
            {
                "number_id": number.get("number_id"),
                "routing_address": number.get("routing_address"),
                "name": number.get("name"),
                "conversations": routed.get(str(number.get("number_id")), 0),
            }
            for number in numbers
        ],
        "inspected": len(conversations),
        "routed": sum(routed.values()),
        "unrouted": sum(unrouted_addresses.values()),
        "unrouted_addresses": dict(unrouted_addresses),
        "resolution_failed": failed,
    }

    if args.json:
        print(json.dumps(summary, indent=2))
        return 0

    print(f"inbox: {api_base_url}")
    print(f"inspected {summary['inspected']} conversations: {summary['routed']} routed, {summary['unrouted']} unrouted")
    for number in summary["configured_numbers"]:
        print(f"  [{number['number_id']}] {number['name']} {number['routing_address']}: {number['conversations']}")
    if unrouted_addresses:
        print("unrouted proxy addresses (add them to INBOX_NUMBERS_CONFIG or WHATSAPP_NUMBER_N):")
        for address, total in unrouted_addresses.most_common():
            print(f"  {address}: {total}")
    if failed:
        print(f"conversations that could not be fully resolved: {', '.join(failed)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
