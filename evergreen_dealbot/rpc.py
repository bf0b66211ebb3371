import itertools
import json
import logging
import requests
import tenacity
import urllib3

from typing import Any, Callable, Optional, Tuple

from .errors import ProtocolError, RpcError, TransportError

log_request = logging.getLogger("Dealbot.Request")
log_retry = logging.getLogger("Dealbot.RETRYING")

RETRY_ATTEMPTS = 5
REQUEST_TIMEOUT = 30

_json_rpc_id = itertools.count(1)


class PersistentAuthSession(requests.Session):
    # requests drops the Authorization header when a redirect changes host.
    # Evergreen redirects between hosts and expects the FIL-SPID header on every hop.
    def rebuild_auth(self, prepared_request, response):
        return


class AuthTokenInTheFuture(TransportError):
    pass


def parse_api_info(api_info: str) -> Tuple[Optional[str], str]:
    """Split a Lotus style `TOKEN:/ip4/HOST/tcp/PORT/http` string into (token, base_url)."""
    if api_info.startswith("/"):
        token, multiaddr = None, api_info
    elif ":" in api_info:
        token, multiaddr = api_info.split(":", 1)
    else:
        raise ProtocolError(f"Unsupported API info: {api_info}")
    parts = multiaddr.split("/")
    if len(parts) < 5 or parts[1] not in ("ip4", "ip6", "dns", "dns4", "dns6"):
        raise ProtocolError(f"Unsupported API address: {multiaddr}")
    host = parts[2]
    if parts[1] == "ip6":
        host = f"[{host}]"
    port = parts[4]
    scheme = parts[5] if len(parts) > 5 and parts[5] in ("http", "https") else "http"
    return token, f"{scheme}://{host}:{port}"


def request_handler(
    *,
    url: str,
    method: str,
    parameters: dict,
    log_name: str,
    auth: Optional[Callable[[], str]] = None,
    attempts: int = RETRY_ATTEMPTS,
) -> requests.Response:
    send = make_request
    if attempts != RETRY_ATTEMPTS:
        send = make_request.retry_with(stop=tenacity.stop_after_attempt(attempts))
    try:
        return send(url=url, method=method, parameters=parameters, log_name=log_name, auth=auth)
    except tenacity.RetryError as e:
        log_request.error(f"{log_name}, retries failed. Moving on.")
        raise TransportError(f"{log_name}: retries exhausted: {e.last_attempt.exception()}") from e


@tenacity.retry(
    wait=tenacity.wait_exponential(min=1, max=6, multiplier=2),
    stop=tenacity.stop_after_attempt(RETRY_ATTEMPTS),
    retry=tenacity.retry_if_exception_type(TransportError),
    after=tenacity.after.after_log(log_retry, logging.INFO),
)
def make_request(
    *, url: str, method: str, parameters: dict, log_name: str, auth: Optional[Callable[[], str]] = None
) -> requests.Response:
    parameters = dict(parameters)
    parameters.setdefault("timeout", REQUEST_TIMEOUT)
    headers = dict(parameters.pop("headers", {}))
    # Tokens are time-boxed, so a fresh one is generated for every attempt
    if auth is not None:
        headers["Authorization"] = auth()

    try:
        with PersistentAuthSession() as session:
            response = session.request(method.upper(), url, headers=headers, **parameters)
    except requests.exceptions.ConnectionError as e:
        log_request.error(f"{log_name}, ConnectionError: {e}")
        raise TransportError(f"ConnectionError: {e}") from e
    except (TimeoutError, urllib3.exceptions.ReadTimeoutError, requests.exceptions.Timeout) as e:
        log_request.error(f"{log_name}, Timeout: {e}")
        raise TransportError(f"Timeout: {e}") from e
    except requests.exceptions.RequestException as e:
        log_request.error(f"{log_name}, RequestException: {e}")
        raise TransportError(f"RequestException: {e}") from e

    if response.status_code == 401 and "in the future" in response.text:
        log_request.info(
            f'{log_name}: the auth token is "in the future" according to the server. Retrying.'
        )
        raise AuthTokenInTheFuture("Auth token is in the future.")
    if response.status_code >= 500:
        log_request.error(f"{log_name}, server error {response.status_code}: {response.text[:200]}")
        raise TransportError(f"{log_name}: HTTP {response.status_code}")

    return response


def decode_json(response: requests.Response, log_name: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise ProtocolError(f"{log_name}: response is not JSON: {response.text[:200]!r}") from e


class JsonRpcClient:
    """Minimal Filecoin JSON-RPC client over HTTP, shared by the Lotus and Boost clients."""

    def __init__(self, api_info: str, *, name: str, path: str = "/rpc/v0", timeout: int = REQUEST_TIMEOUT):
        self.name = name
        self.token, base_url = parse_api_info(api_info)
        self.url = base_url + path
        self.timeout = timeout

    def call(self, method: str, *params: Any, long_running: bool = False) -> Any:
        """Invoke `method` and return its result.

        Long running calls (exports, imports) are not idempotent: they are sent once, without
        a read timeout.
        """
        method = method if method.startswith("Filecoin.") else f"Filecoin.{method}"
        payload = {
            "method": method,
            "params": list(params),
            "jsonrpc": "2.0",
            "id": next(_json_rpc_id),
        }
        headers = {"content-type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        response = request_handler(
            url=self.url,
            method="post",
            parameters={
                "timeout": None if long_running else self.timeout,
                "data": json.dumps(payload),
                "headers": headers,
            },
            log_name=f"{self.name}.{method}",
            attempts=1 if long_running else RETRY_ATTEMPTS,
        )
        if response.status_code in (401, 403):
            raise RpcError(method, response.status_code, "unauthorized, check the API token")

        body = decode_json(response, f"{self.name}.{method}")
        log_request.debug(f"{self.name}.{method}, Response: {body}")
        if not isinstance(body, dict):
            raise ProtocolError(f"{self.name}.{method}: unexpected response {body!r}")
        if body.get("error"):
            error = body["error"]
            raise RpcError(method, error.get("code", 0), error.get("message", str(error)))
        return body.get("result")
