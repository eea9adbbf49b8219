#!/usr/bin/env python3
"""Trigger the bulk token refresh of a running bffauth service.

Intended for cron or a scheduler in deployments where the in-process refresh
loop is disabled (TOKEN_REFRESH_INTERVAL_SECONDS=0).

Usage:
    TOKEN_REFRESH_API_KEY=... python scripts/trigger_token_refresh.py --base-url https://app.example.com

Environment Variables:
    TOKEN_REFRESH_API_KEY: Bearer key the service expects on the refresh-tokens route
    BFFAUTH_BASE_URL: Service base URL (default http://localhost:8000)
    AUTH_ROUTE_PREFIX: Auth route prefix (default /api/auth)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, Optional

import httpx


async def trigger_refresh(
    base_url: str,
    api_key: str,
    *,
    prefix: str = "/api/auth",
    timeout: float = 30.0,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """POST to ``<base_url><prefix>/refresh-tokens`` and return the summary."""
    url = f"{base_url.rstrip('/')}/{prefix.strip('/')}/refresh-tokens"
    headers = {"Authorization": f"Bearer {api_key}"}
    if client is not None:
        response = await client.post(url, headers=headers, timeout=timeout)
    else:
        async with httpx.AsyncClient(timeout=timeout) as owned:
            response = await owned.post(url, headers=headers)
    response.raise_for_status()
    return response.json()


def main():
    parser = argparse.ArgumentParser(
        description="Refresh expiring OAuth tokens of all stored sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--base-url",
        default=os.environ.get("BFFAUTH_BASE_URL", "http://localhost:8000"),
        help="Service base URL (or set BFFAUTH_BASE_URL env var)",
    )
    parser.add_argument(
        "--prefix",
        default=os.environ.get("AUTH_ROUTE_PREFIX", "/api/auth"),
        help="Auth route prefix (or set AUTH_ROUTE_PREFIX env var)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("TOKEN_REFRESH_API_KEY"),
        help="Refresh API key (or set TOKEN_REFRESH_API_KEY env var)",
    )
    parser.add_argument("--timeout", type=float, default=30.0, help="Request timeout in seconds")

    args = parser.parse_args()

    if not args.api_key:
        print("Error: --api-key or TOKEN_REFRESH_API_KEY environment variable required")
        sys.exit(1)

    try:
        result = asyncio.run(
            trigger_refresh(args.base_url, args.api_key, prefix=args.prefix, timeout=args.timeout)
        )
    except httpx.HTTPStatusError as e:
        print(f"Error: refresh request failed with status {e.response.status_code}")
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(
        f"Token refresh completed: {result.get('refreshed', 0)} refreshed, "
        f"{result.get('failed', 0)} failed, {result.get('total', 0)} total sessions"
    )
    if result.get("failed"):
        sys.exit(2)


if __name__ == "__main__":
    main()
