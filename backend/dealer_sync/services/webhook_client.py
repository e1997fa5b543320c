"""
Cliente HTTP para los webhooks de dealers.

Reintenta con backoff exponencial ante timeout, error de conexion, 408, 429 y
5xx; cualquier otro 4xx es definitivo. Nunca lanza: el resultado describe el
desenlace del envio.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass

import requests

from dealer_sync.core.config import settings

logger = logging.getLogger(__name__)

ACK_TOKEN_FIELDS = ('ackToken', 'ack_token', 'tokenConfirmacion')
SECRET_HEADER = 'X-Webhook-Secret'
SIGNATURE_HEADER = 'X-Webhook-Signature'


@dataclass
class WebhookResult:
    is_success: bool
    status_code: int | None = None
    ack_token: str | None = None
    error_message: str | None = None
    attempts: int = 0
    is_auth_error: bool = False
    is_connection_error: bool = False
    is_timeout: bool = False


def sign_body(secret: str, body: bytes) -> str:
    return 'sha256=' + hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


def extract_ack_token(response: requests.Response) -> str | None:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    for field in ACK_TOKEN_FIELDS:
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class WebhookClient:
    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_max_seconds: float | None = None,
        sleep=time.sleep,
    ):
        self.timeout = float(timeout if timeout is not None else settings.webhook_timeout_seconds)
        self.max_retries = max(1, int(max_retries if max_retries is not None else settings.webhook_max_retries))
        self.backoff_max_seconds = float(
            backoff_max_seconds if backoff_max_seconds is not None else settings.webhook_backoff_max_seconds
        )
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'DealerSync-Webhook/1.0',
        })

    def _calculate_backoff(self, attempt: int) -> float:
        # 1s, 2s, 4s... con tope
        return min(2 ** (attempt - 1), self.backoff_max_seconds)

    def _should_retry_status(self, status_code: int) -> bool:
        return status_code >= 500 or status_code in (408, 429)

    def send(self, url: str, payload: dict, secret_key: str | None) -> WebhookResult:
        body = json.dumps(payload, ensure_ascii=False, default=str).encode('utf-8')
        headers = {}
        if secret_key:
            headers[SECRET_HEADER] = secret_key
            headers[SIGNATURE_HEADER] = sign_body(secret_key, body)

        result = WebhookResult(is_success=False)
        attempt = 0
        while attempt < self.max_retries:
            attempt += 1
            result.attempts = attempt
            retryable = False
            try:
                logger.debug('[webhook] attempt %s/%s POST %s', attempt, self.max_retries, url)
                response = self.session.request(
                    method='POST',
                    url=url,
                    data=body,
                    headers=headers,
                    timeout=self.timeout,
                )
                result.status_code = response.status_code
                result.is_timeout = False
                result.is_connection_error = False
                if 200 <= response.status_code < 300:
                    ack = extract_ack_token(response)
                    if ack is None:
                        result.error_message = f'HTTP {response.status_code} sin token de confirmacion valido'
                        return result
                    result.is_success = True
                    result.ack_token = ack
                    result.error_message = None
                    return result
                result.is_auth_error = response.status_code in (401, 403)
                result.error_message = f'HTTP {response.status_code}: {response.text[:500]}'
                retryable = self._should_retry_status(response.status_code)
            except requests.exceptions.Timeout:
                result.is_timeout = True
                result.error_message = f'Timeout tras {self.timeout}s'
                retryable = True
            except requests.exceptions.ConnectionError as exc:
                result.is_connection_error = True
                result.error_message = f'Error de conexion: {exc}'
                retryable = True
            except requests.exceptions.RequestException as exc:
                result.error_message = f'Error en la peticion: {exc}'
                retryable = False

            if not retryable or attempt >= self.max_retries:
                break
            backoff = self._calculate_backoff(attempt)
            logger.warning(
                '[webhook] %s failed (%s), retrying in %ss (attempt %s/%s)',
                url, result.error_message, backoff, attempt, self.max_retries,
            )
            self._sleep(backoff)

        logger.warning('[webhook] %s failed after %s attempt(s): %s', url, result.attempts, result.error_message)
        return result

    def close(self) -> None:
        self.session.close()
