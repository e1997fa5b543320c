"""Smoke de despliegue: health y consulta autenticada de tipos de proceso."""
import json
import os
import urllib.request


def _get(url: str, token: str | None = None) -> dict:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    req = urllib.request.Request(url, method="GET", headers=headers)
    return json.loads(urllib.request.urlopen(req, timeout=15).read().decode("utf-8"))


def main() -> int:
    base = os.getenv("SMOKE_API_V1_BASE", "http://dealer-sync-api:8000/api/v1").rstrip("/")
    token = os.getenv("SMOKE_API_V1_TOKEN", "")

    health = _get(f"{base}/health")
    assert health.get("ok") is True, health
    assert health.get("lock_store_ok") is not False, health
    print("health_ok")

    if not token:
        print("process_types_skipped (SMOKE_API_V1_TOKEN vacio)")
        return 0
    types = _get(f"{base}/dealer-sync/process-types", token)
    assert types.get("process_types"), types
    print("process_types_ok", ",".join(types["process_types"]))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
