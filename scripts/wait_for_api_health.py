#!/usr/bin/env python3
"""Espera hasta que GET /health reporte base de datos y lock OK. Uso: python scripts/wait_for_api_health.py [max_wait_seconds]"""
import json
import os
import sys
import time
import urllib.error
import urllib.request


def _healthy(base: str) -> bool:
    try:
        raw = urllib.request.urlopen(f"{base}/health", timeout=5).read().decode("utf-8")
    except (urllib.error.URLError, OSError):
        return False
    body = json.loads(raw)
    # lock_store_ok es None mientras el planificador no arranca
    return bool(body.get("db_ok")) and body.get("lock_store_ok") is not False


def main():
    base = os.getenv("SMOKE_API_V1_BASE", "http://dealer-sync-api:8000/api/v1").rstrip("/")
    max_wait = int(sys.argv[1]) if len(sys.argv) > 1 else 60
    deadline = time.monotonic() + max_wait
    while time.monotonic() < deadline:
        if _healthy(base):
            return 0
        time.sleep(2)
    return 1


if __name__ == "__main__":
    sys.exit(main())
