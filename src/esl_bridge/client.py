"""
Minew ESL Cloud API Client

Synchronous HTTP client with:
- Token header on every authenticated call
- Exactly one forced token refresh when the platform reports code 14002
- Bounded retry with attempt-scaled delay for network errors and 5xx
- Structured failures instead of exceptions for expected error categories
- Request/response logging
"""

import time
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from esl_bridge.config import BridgeSettings
from esl_bridge.errors import (
    CODE_INTERNAL,
    CODE_TOKEN_INVALID,
    AuthError,
    BridgeError,
    PlatformRejection,
    TransientNetworkError,
)
from esl_bridge.models import LabelInfo, PlatformResponse, extract_stores

if TYPE_CHECKING:
    from esl_bridge.token_manager import TokenManager

logger = structlog.get_logger(__name__)

USER_AGENT = "ESL-Bridge/1.0"


def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger another attempt."""
    if isinstance(exception, TransientNetworkError):
        return True
    if isinstance(exception, PlatformRejection):
        return exception.retryable
    return False


class PlatformClient:
    """
    Minew ESL cloud API client.

    The token manager is attached after construction because it needs this
    client for its own login call.

    Example:
        client = PlatformClient(settings)
        client.token_manager = TokenManager(settings, session_factory, client)

        with client:
            response = client.list_stores()
            if response.ok:
                ...
    """

    def __init__(
        self,
        settings: BridgeSettings,
        http: httpx.Client | None = None,
    ):
        self.settings = settings
        self.base_url = settings.api_base
        self._http = http
        self._owns_http = http is None
        self._token_manager: "TokenManager | None" = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0

        self._log = logger.bind(api_base=self.base_url)

    def __enter__(self) -> "PlatformClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._http is not None and self._owns_http:
            self._http.close()
            self._http = None

    @property
    def http(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._http is None:
            self._http = httpx.Client(
                timeout=self.settings.timeout_seconds,
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_http = True
        return self._http

    @property
    def token_manager(self) -> "TokenManager":
        if self._token_manager is None:
            raise RuntimeError("Attach a TokenManager before making authenticated calls")
        return self._token_manager

    @token_manager.setter
    def token_manager(self, value: "TokenManager") -> None:
        self._token_manager = value

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _send(
        self,
        method: str,
        endpoint: str,
        token: str | None = None,
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> PlatformResponse:
        """
        Single HTTP round trip.

        Raises:
            TransientNetworkError: transport failure or 5xx
            PlatformRejection: body is not a valid JSON envelope
        """
        url = f"{self.base_url}{endpoint}"
        headers = {"Content-Type": "application/json;charset=utf-8"}
        if token:
            headers["token"] = token

        self._request_count += 1
        request_id = self._request_count
        log = self._log.bind(endpoint=endpoint, method=method, request_id=request_id)
        log.debug("API request")

        start_time = time.monotonic()
        try:
            response = self.http.request(
                method,
                url,
                json=body,
                params=params,
                headers=headers,
            )
        except httpx.TransportError as e:
            self._error_count += 1
            raise TransientNetworkError(f"Network error calling {endpoint}: {e}") from e
        elapsed = time.monotonic() - start_time

        log.debug(
            "API response",
            status_code=response.status_code,
            elapsed_ms=round(elapsed * 1000),
        )

        if response.status_code >= 500:
            self._error_count += 1
            raise TransientNetworkError(
                f"Server error {response.status_code} - will retry",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            self._error_count += 1
            raise PlatformRejection(
                CODE_INTERNAL, f"Invalid JSON response (HTTP {response.status_code}): {e}"
            ) from e

        if not isinstance(data, dict):
            self._error_count += 1
            raise PlatformRejection(CODE_INTERNAL, f"Unexpected response shape (HTTP {response.status_code})")

        try:
            result = PlatformResponse.model_validate(data)
        except ValidationError as e:
            self._error_count += 1
            raise PlatformRejection(
                CODE_INTERNAL, f"Malformed response envelope (HTTP {response.status_code}): {e.error_count()} error(s)"
            ) from e
        if not result.ok:
            self._error_count += 1
        return result

    def login(self, username: str, password_digest: str) -> PlatformResponse:
        """
        Unauthenticated login call. No retry: the token manager decides.
        """
        try:
            return self._send(
                "POST",
                "/apis/action/login",
                body={"username": username, "password": password_digest},
            )
        except BridgeError as e:
            self._log.warning("Login request failed", error=str(e))
            return PlatformResponse.failure(str(e))

    def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any = None,
        params: dict[str, Any] | None = None,
    ) -> PlatformResponse:
        """
        Make an authenticated, retrying request to the platform.

        Never raises for expected failures: a missing token, exhausted retries
        or a malformed body all come back as a failed PlatformResponse.
        """
        log = self._log.bind(endpoint=endpoint, method=method)
        force_refresh = False

        def _attempt() -> PlatformResponse:
            nonlocal force_refresh
            token = self.token_manager.acquire(force_refresh=force_refresh)
            force_refresh = False
            if not token:
                raise AuthError("Failed to get platform token")

            response = self._send(method, endpoint, token=token, body=body, params=params)

            if response.code == CODE_TOKEN_INVALID:
                log.info("Platform rejected token, refreshing")
                self.token_manager.invalidate()
                force_refresh = True
                raise PlatformRejection(response.code, response.msg or "Token invalid")

            return response

        def _before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            log.info(
                "Retrying platform call",
                attempt=retry_state.attempt_number,
                error=str(exc),
            )

        delay = self.settings.retry_delay_seconds
        retryer = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_incrementing(start=delay, increment=delay),
            before_sleep=_before_sleep,
            reraise=True,
        )

        try:
            return retryer(_attempt)
        except PlatformRejection as e:
            log.warning("Platform call rejected", code=e.code, error=e.message)
            return PlatformResponse.failure(e.message, code=e.code)
        except BridgeError as e:
            log.warning("Platform call failed", error=str(e))
            return PlatformResponse.failure(str(e))

    # -------------------------------------------------------------------------
    # Stores
    # -------------------------------------------------------------------------

    def list_stores(self, active: int = 1, page: int = 1, size: int = 100) -> PlatformResponse:
        return self.call(
            "/apis/esl/store/listPage",
            params={"page": page, "size": size, "active": active},
        )

    # -------------------------------------------------------------------------
    # Goods (inventory data)
    # -------------------------------------------------------------------------

    def add_goods(self, store_id: str, goods: dict[str, Any]) -> PlatformResponse:
        """Create or overwrite goods keyed by goods["id"]."""
        return self.call("/apis/esl/goods/addToStore", "POST", body={"storeId": store_id, **goods})

    def update_goods(self, store_id: str, goods: dict[str, Any]) -> PlatformResponse:
        return self.call("/apis/esl/goods/update", "POST", body={"storeId": store_id, **goods})

    def find_goods(self, goods_id: str) -> dict[str, Any] | None:
        """Goods record by id, None when missing or on failure."""
        response = self.call("/apis/esl/goods/findByGoodsId", params={"goodsId": goods_id})
        if response.ok and isinstance(response.data, dict):
            return response.data
        return None

    def delete_goods(self, store_id: str, goods_ids: list[str]) -> PlatformResponse:
        return self.call(
            "/apis/esl/goods/delete",
            "POST",
            body={"storeId": store_id, "ids": [str(g) for g in goods_ids]},
        )

    # -------------------------------------------------------------------------
    # Labels
    # -------------------------------------------------------------------------

    def import_labels(self, store_id: str, macs: list[str]) -> PlatformResponse:
        # type 1 = ESL tag
        return self.call(
            "/apis/esl/label/batchAdd",
            "POST",
            body={"storeId": store_id, "macArray": macs, "type": 1},
        )

    def bind_label(
        self,
        store_id: str,
        mac: str,
        goods_id: str,
        template_id: str | None = None,
        side: str = "A",
    ) -> PlatformResponse:
        """Bind one label; without a template the platform strategy picks one."""
        if template_id is None:
            return self.call(
                "/apis/esl/label/bind/generateBindingByTemplateStrategy",
                "POST",
                body={
                    "storeId": store_id,
                    "labelTemplateDataVOList": [{"labelMac": mac, "goodsId": goods_id}],
                },
            )
        return self.call(
            "/apis/esl/label/update",
            "POST",
            body={
                "storeId": store_id,
                "labelMac": mac,
                "goodsId": goods_id,
                "demoIdMap": {side: template_id},
            },
        )

    def unbind_label(self, store_id: str, mac: str) -> PlatformResponse:
        return self.call(
            "/apis/esl/label/deleteBind",
            "POST",
            params={"mac": mac, "storeId": store_id},
        )

    def refresh_labels(self, store_id: str, macs: list[str]) -> PlatformResponse:
        return self.call("/apis/esl/label/batchRefresh", "POST", body={"storeId": store_id, "macs": macs})

    def wake_labels(self, store_id: str, macs: list[str]) -> PlatformResponse:
        return self.call("/apis/esl/label/batchWake", "POST", body={"storeId": store_id, "macs": macs})

    def list_labels(
        self,
        store_id: str,
        page: int = 1,
        size: int = 50,
        status: str | None = None,
    ) -> PlatformResponse:
        """
        One page of the store's ESL tags.

        status filters by platform status code: 1 offline, 2 online,
        5 low battery, 8 bound, 9 unbound (comma-separated for several).
        """
        params: dict[str, Any] = {"page": page, "size": size, "storeId": store_id, "type": "1"}
        if status:
            params["eqstatus"] = status
        return self.call("/apis/esl/label/cascadQuery", params=params)

    def find_label(self, mac: str, store_id: str | None = None) -> LabelInfo | None:
        params = {"mac": mac}
        if store_id:
            params["storeId"] = store_id
        response = self.call("/apis/esl/label/findByMac", params=params)
        if response.ok and isinstance(response.data, dict):
            return LabelInfo.model_validate(response.data)
        return None

    # -------------------------------------------------------------------------
    # Operation logs
    # -------------------------------------------------------------------------

    def query_logs(
        self,
        store_id: str,
        action_type: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> PlatformResponse:
        body: dict[str, Any] = {
            "storeId": store_id,
            "objectType": "1",
            "currentPage": page,
            "pageSize": page_size,
        }
        if action_type:
            body["actionType"] = action_type
        return self.call("/apis/esl/logs/queryList", "POST", body=body)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "api_base": self.base_url,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        token = self.token_manager.acquire()
        if not token:
            return {"status": "auth_error", "message": "Login failed - check credentials"}

        response = self.list_stores()
        if not response.ok:
            return {"status": "error", "message": response.msg or f"code {response.code}"}
        return {
            "status": "healthy",
            "stores": len(extract_stores(response)),
            "api_base": self.base_url,
        }
