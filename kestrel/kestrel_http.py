import asyncio
from typing import Optional, Dict, Any

import httpx

from kestrel.kestrel_serialize import deserialize, serialize


def normalize_response_mode(cfg: dict) -> Optional[str]:
    """
    Returns one of 'lite' | 'full' | None based on cfg['response_mode'].
    'lite' returns (status, value, headers) without raising on non-2xx;
    'full' returns the same triple for callers that package it as a Hash.
    """
    mode = cfg.get('response_mode')
    if mode is None:
        return None
    s = str(mode).strip().lower()
    return s if s in ('lite', 'full') else None


def _prepare_payload(cfg: dict, data) -> Optional[bytes]:
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        return data.encode('utf-8')
    # Structured payloads go out as JSON unless the caller asked for YAML
    ct = str(cfg.get('headers', {}).get('Content-Type', 'application/json'))
    fmt = 'yaml' if 'yaml' in ct else 'json'
    cfg.setdefault('headers', {})
    cfg['headers'].setdefault('Content-Type', ct)
    return serialize(data, fmt=fmt, pretty=False).encode('utf-8')


async def http_request(method: str, url: str, *, config: Optional[Dict] = None, data: Any = None,
                       transport: Optional[httpx.AsyncBaseTransport] = None) -> Any:
    """
    Core HTTP helper used by the `http_get` / `http_post` built-ins.

    Config keys: timeout (seconds, default 5), retries (default 2), backoff
    (seconds, doubled per attempt), headers, params, response_mode.
    Without a response mode the deserialized body is returned on 2xx and
    RuntimeError is raised otherwise.
    """
    cfg = dict(config or {})
    cfg['headers'] = dict(cfg.get('headers') or {})
    timeout = float(cfg.pop('timeout', 5.0))
    retries = int(cfg.pop('retries', 2))
    backoff = float(cfg.pop('backoff', 0.2))
    params = dict(cfg.pop('params', None) or {})
    mode = normalize_response_mode(cfg)
    body = _prepare_payload(cfg, data)
    headers = {str(k): str(v) for k, v in cfg['headers'].items()}
    if body is not None:
        headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                resp = await client.request(method.upper(), url, headers=headers, params=params, content=body)
                ct = resp.headers.get("Content-Type")
                if mode in ('lite', 'full'):
                    value = deserialize(resp.content, content_type=ct)
                    headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                    return int(resp.status_code), value, headers_map
                if 200 <= resp.status_code < 300:
                    return deserialize(resp.content, content_type=ct)
                preview = (resp.text or "")[:200]
                raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
            except (httpx.HTTPError, RuntimeError) as e:
                last_exc = e
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise last_exc
