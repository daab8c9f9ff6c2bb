from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from dexcopy.errors import BuildError, NoRoute, QuoteError

USER_AGENT = "dexcopy/0.1"


class JupiterClient:
    """Blocking client for the Jupiter v6 quote and swap endpoints.

    Transport errors (timeouts, refused connections, 5xx) are retried a bounded
    number of times; HTTP 4xx answers are final.
    """

    def __init__(
        self,
        base_url: str,
        *,
        max_retries: int = 2,
        request_timeout_s: float = 5.0,
        retry_backoff_s: float = 0.1,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._max_retries = max(1, max_retries)
        self._request_timeout_s = request_timeout_s
        self._retry_backoff_s = retry_backoff_s
        self._log = logging.getLogger(self.__class__.__name__)

    def quote(
        self,
        *,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
        only_direct_routes: bool = False,
    ) -> dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
            "onlyDirectRoutes": "true" if only_direct_routes else "false",
        }
        url = f"{self._base_url}/quote?{urllib.parse.urlencode(params)}"
        try:
            return self._request("GET", url, None)
        except _HttpFailure as exc:
            if _classify_error_code(exc.body or str(exc)) == "no_route":
                raise NoRoute(f"no route for {input_mint}->{output_mint}: {exc}") from exc
            raise QuoteError(f"quote request failed: {exc}") from exc

    def swap_transaction(
        self,
        *,
        quote: dict[str, Any],
        user_public_key: str,
        wrap_and_unwrap_sol: bool = True,
        as_legacy_transaction: bool = False,
    ) -> str:
        payload = {
            "quoteResponse": quote,
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "asLegacyTransaction": as_legacy_transaction,
        }
        try:
            response = self._request("POST", f"{self._base_url}/swap", payload)
        except _HttpFailure as exc:
            raise BuildError(f"swap request failed: {exc}") from exc
        blob = response.get("swapTransaction")
        if not isinstance(blob, str) or not blob:
            raise BuildError("swap response carried no swapTransaction")
        return blob

    def _request(self, method: str, url: str, payload: dict[str, Any] | None) -> dict[str, Any]:
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if body is not None:
            headers["Content-Type"] = "application/json"

        for attempt in range(1, self._max_retries + 1):
            try:
                req = urllib.request.Request(url, data=body, headers=headers, method=method)
                with urllib.request.urlopen(req, timeout=self._request_timeout_s) as resp:
                    parsed = json.loads(resp.read().decode("utf-8"))
                if not isinstance(parsed, dict):
                    raise _HttpFailure("expected a JSON object")
                return parsed
            except urllib.error.HTTPError as exc:
                error_body = _read_body(exc)
                if exc.code < 500 or attempt == self._max_retries:
                    raise _HttpFailure(f"HTTP {exc.code}: {error_body or exc.reason}", body=error_body) from exc
                self._log.warning(
                    "jupiter_retry method=%s attempt=%s status=%s", method, attempt, exc.code
                )
            except (TimeoutError, urllib.error.URLError, json.JSONDecodeError) as exc:
                if attempt == self._max_retries:
                    raise _HttpFailure(str(exc)) from exc
                self._log.warning(
                    "jupiter_retry method=%s attempt=%s error=%s", method, attempt, exc
                )
            time.sleep(self._retry_backoff_s * attempt)
        raise _HttpFailure("unreachable")


class _HttpFailure(Exception):
    def __init__(self, message: str, *, body: str = "") -> None:
        super().__init__(message)
        self.body = body


def _read_body(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read()
    except Exception:
        return ""
    text = raw.decode("utf-8", errors="replace") if raw else ""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(parsed, dict):
        return str(parsed.get("error") or parsed.get("message") or parsed.get("errorCode") or text)
    return text


def _classify_error_code(error: str) -> str:
    normalized = error.lower()
    if "could not find any route" in normalized or "no_routes_found" in normalized:
        return "no_route"
    if "route not found" in normalized or "token_not_tradable" in normalized:
        return "no_route"
    return ""
