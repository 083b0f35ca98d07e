#!src/ontario_obits_app/llm/http_transport.py
from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ontario_obits_app.llm.errors import (
    ErrorKind,
    LLMError,
    LLMErrorDetails,
    kind_from_status,
    parse_retry_after_seconds,
)

MAX_RAW_CHARS = 2000
MAX_BODY_BYTES = 2_000_000


@dataclass(frozen=True, slots=True)
class HTTPTransport:
    """Shared HTTP transport with retries and a total time limit.

    Transport-level retries only cover connection failures. Status-based
    retries are left to the caller, which owns the token budget.

    Args:
        timeout_seconds: Total timeout per request in seconds.
        session: Optional pre-built session, used by tests.
    """

    timeout_seconds: int
    session: Optional[requests.Session] = None

    def build_session(self) -> requests.Session:
        s = requests.Session()
        retry = Retry(
            total=2,
            connect=2,
            read=0,
            status=0,
            backoff_factor=0.6,
            allowed_methods=("POST",),
            raise_on_status=False,
        )
        s.mount("https://", HTTPAdapter(max_retries=retry))
        s.mount("http://", HTTPAdapter(max_retries=retry))
        return s

    def post_json(
        self,
        url: str,
        headers: Mapping[str, str],
        payload: Dict[str, Any],
        provider: str,
        model: str,
    ) -> Dict[str, Any]:
        """POST a JSON payload and return the decoded JSON object.

        Args:
            url: Endpoint.
            headers: Request headers. They never appear in raised errors.
            payload: JSON body.
            provider: Provider name for error details.
            model: Model id for error details.

        Returns:
            The decoded response object.

        Raises:
            LLMError: Normalized transport, status or parse failure.
        """
        total_timeout = int(max(1, int(self.timeout_seconds)))
        connect_timeout = int(max(1, min(10, total_timeout)))

        s = self.session or self.build_session()
        t0 = time.perf_counter()
        try:
            r = s.post(
                url,
                headers=dict(headers),
                json=payload,
                timeout=(connect_timeout, total_timeout),
                stream=True,
            )
        except requests.Timeout as ex:
            raise LLMError(
                LLMErrorDetails(kind=ErrorKind.TIMEOUT, provider=provider, model=model, message=type(ex).__name__)
            ) from ex
        except requests.RequestException as ex:
            raise LLMError(
                LLMErrorDetails(kind=ErrorKind.NETWORK, provider=provider, model=model, message=type(ex).__name__)
            ) from ex

        try:
            body = self._read_with_total_timeout(r, t0, total_timeout, provider, model)
            return self._handle_response_text(r, body, provider, model)
        finally:
            r.close()

    def _read_with_total_timeout(
        self,
        r: Response,
        started_at: float,
        total_timeout_seconds: int,
        provider: str,
        model: str,
    ) -> str:
        chunks: list[bytes] = []
        size = 0
        for chunk in r.iter_content(chunk_size=65536):
            if chunk:
                chunks.append(chunk)
                size += len(chunk)
            if time.perf_counter() - started_at > float(total_timeout_seconds):
                raise LLMError(
                    LLMErrorDetails(
                        kind=ErrorKind.TIMEOUT,
                        provider=provider,
                        model=model,
                        status_code=int(r.status_code or 0) or None,
                        message=f"Total timeout exceeded: {total_timeout_seconds}s",
                    )
                )
            if size > MAX_BODY_BYTES:
                raise LLMError(
                    LLMErrorDetails(
                        kind=ErrorKind.INVALID_REQUEST,
                        provider=provider,
                        model=model,
                        status_code=int(r.status_code or 0) or None,
                        message=f"Response too large, bytes={size}",
                    )
                )
        return b"".join(chunks).decode("utf8", errors="replace")

    def _handle_response_text(
        self, r: Response, body_text: str, provider: str, model: str
    ) -> Dict[str, Any]:
        status = int(r.status_code)
        raw_text = str(body_text or "")[:MAX_RAW_CHARS]

        if 200 <= status < 300:
            try:
                parsed = json.loads(body_text)
            except ValueError as ex:
                raise LLMError(
                    LLMErrorDetails(
                        kind=ErrorKind.PARSE,
                        provider=provider,
                        model=model,
                        status_code=status,
                        message=str(ex),
                        raw=raw_text,
                    )
                ) from ex
            if not isinstance(parsed, dict):
                raise LLMError(
                    LLMErrorDetails(
                        kind=ErrorKind.PARSE,
                        provider=provider,
                        model=model,
                        status_code=status,
                        message="Response JSON is not an object",
                        raw=raw_text,
                    )
                )
            return dict(parsed)

        retry_after = parse_retry_after_seconds(r.headers)
        raise LLMError(
            LLMErrorDetails(
                kind=kind_from_status(status),
                provider=provider,
                model=model,
                status_code=status,
                retry_after_seconds=retry_after if retry_after and retry_after > 0 else None,
                message=self._best_message(raw_text),
                raw=raw_text,
            )
        )

    @staticmethod
    def _best_message(body: str) -> str:
        try:
            data = json.loads(body)
        except ValueError:
            return body[:300]
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                m = str(err.get("message") or "").strip()
                if m:
                    return m[:300]
        return body[:300]
