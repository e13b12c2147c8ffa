"""Desk backend REST client — funds, orders, and quote snapshots.

Implements the funds, order-mutation, and baseline-snapshot services
over the desk backend's HTTP API. The backend owns every order; this
client only reads and requests transitions.

No request is retried automatically: a failed mutation is reported to
the user, who decides whether to try again.

Usage:
    client = DeskClient(session, base_url="http://localhost:8080")
    limits = await client.query_funds(ProductType.INTRADAY)
    order = await client.submit_mutation(request)
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

import httpx
import structlog

from positiondesk.exceptions import ServiceError
from positiondesk.schemas.enums import OrderStatus, ProductType
from positiondesk.schemas.market import Snapshot, normalize_token
from positiondesk.schemas.option_chain import OptionChain
from positiondesk.schemas.orders import Order, OrderMutationRequest, ProductLimits
from positiondesk.session import SessionContext

logger = structlog.get_logger()

FUNDS_SECTIONS = {
    ProductType.INTRADAY: "intraday",
    ProductType.OVERNIGHT: "overnight",
}


class DeskClient:
    """Async HTTP client for the desk backend.

    Reads broker/customer identifiers and the bearer token from the
    session at request time.
    """

    DEFAULT_TIMEOUT = 15.0

    def __init__(
        self,
        session: SessionContext,
        base_url: str = "http://localhost:8080",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """Initialize the desk client.

        Args:
            session: Session context supplying identifiers and auth token.
            base_url: Backend base URL.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> DeskClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _auth_headers(self) -> dict[str, str]:
        info = self._session.info
        if info is not None and info.auth_token:
            return {"Authorization": f"Bearer {info.auth_token}"}
        return {}

    def _identity_params(self) -> dict[str, str]:
        info = self._session.require()
        return {"broker_id_str": info.broker_id, "customer_id_str": info.customer_id}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        service: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make one HTTP request and map failures to ServiceError.

        Raises:
            ServiceError: transport failure, non-2xx status, unparseable
                body, or ``success: false`` in the body.
        """
        client = await self._get_client()
        logger.debug("desk_request", method=method, path=path, service=service)

        try:
            response = await client.request(
                method,
                path,
                json=json,
                params=params or {},
                headers=self._auth_headers(),
            )
        except httpx.TimeoutException as e:
            raise ServiceError(
                f"{service} service timed out: {e}", service=service
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(
                f"{service} service unreachable: {e}", service=service
            ) from e

        body: Any = None
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400 or (isinstance(body, dict) and body.get("success") is False):
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("details") or body.get("error")
            if response.status_code == 403 and not message:
                message = "Access token expired. Please login again."
            logger.debug(
                "desk_error",
                path=path,
                status=response.status_code,
                message=message,
            )
            raise ServiceError(
                message or f"Server error: {response.status_code}",
                status_code=response.status_code,
                service=service,
            )

        if body is None and response.status_code != 204:
            raise ServiceError(
                f"{service} service returned a non-JSON body",
                status_code=response.status_code,
                service=service,
            )

        logger.debug("desk_success", path=path, status=response.status_code)
        return body if body is not None else {}

    # Funds
    async def query_funds(self, product: ProductType) -> ProductLimits:
        """Available and used limits for one product.

        Args:
            product: INTRADAY reads the ``intraday`` section,
                OVERNIGHT the ``overnight`` section.
        """
        data = await self._request(
            "GET", "/api/funds/getFund", service="funds", params=self._identity_params()
        )
        if not isinstance(data, dict):
            raise ServiceError("Unable to fetch wallet balance.", service="funds")
        section = data.get(FUNDS_SECTIONS[ProductType.parse(product)]) or {}
        return ProductLimits.model_validate(section)

    # Orders
    async def submit_mutation(self, request: OrderMutationRequest) -> Optional[Order]:
        """Send one order transition.

        Returns:
            The updated order when the service echoes it, else None.
        """
        data = await self._request(
            "POST",
            "/api/orders/updateOrder",
            service="orders",
            json=request.to_payload(),
        )
        order = data.get("order") if isinstance(data, dict) else None
        return Order.model_validate(order) if order else None

    async def exit_all(
        self,
        broker_id: str,
        customer_id: str,
        closed_ltp_map: Mapping[str, Decimal],
        closed_at: datetime,
    ) -> dict[str, Any]:
        """Close every open order of the customer at the given prices."""
        data = await self._request(
            "PUT",
            "/api/orders/exitAllOpenOrder",
            service="orders",
            params={"broker_id_str": broker_id, "customer_id_str": customer_id},
            json={
                "closed_ltp_map": {k: float(v) for k, v in closed_ltp_map.items()},
                "closed_at": closed_at.isoformat(),
            },
        )
        return data if isinstance(data, dict) else {"result": data}

    async def list_orders(
        self,
        status: OrderStatus = OrderStatus.OPEN,
        product: ProductType | None = ProductType.INTRADAY,
    ) -> list[Order]:
        """Orders of the session's customer in one status."""
        params: dict[str, Any] = {**self._identity_params(), "orderStatus": status.value}
        if product is not None:
            params["product"] = product.value
        data = await self._request(
            "GET", "/api/orders/getOrderInstrument", service="orders", params=params
        )
        if isinstance(data, dict):
            data = data.get("ordersInstrument") or []
        if not isinstance(data, list):
            return []

        orders = []
        for item in data:
            try:
                orders.append(Order.model_validate(item))
            except ValueError as e:
                logger.warning(
                    "Skipping malformed order",
                    order_id=str(item.get("_id")) if isinstance(item, dict) else None,
                    error=str(e),
                )
        return orders

    # Option chain
    async def fetch_option_chain(
        self,
        name: str,
        segment: str | None = None,
        expiry: str | None = None,
    ) -> OptionChain:
        """Chain for an underlying; nearest expiry when none is given."""
        params = {"name": name.upper()}
        if segment:
            params["segment"] = segment
        if expiry:
            params["expiry"] = expiry
        data = await self._request("GET", "/api/option-chain", service="option_chain", params=params)
        payload = data.get("data") if isinstance(data, dict) else None
        if not isinstance(payload, dict):
            raise ServiceError("Failed to fetch option chain", service="option_chain")
        return OptionChain.model_validate(payload)

    async def fetch_expiries(self, name: str, segment: str | None = None) -> list[str]:
        params = {"name": name.upper()}
        if segment:
            params["segment"] = segment
        data = await self._request(
            "GET", "/api/option-chain/expiries", service="option_chain", params=params
        )
        payload = data.get("data") if isinstance(data, dict) else None
        return list((payload or {}).get("expiries") or [])

    # Quotes
    async def fetch_snapshot(self, tokens: Iterable[Any]) -> dict[str, Snapshot]:
        """Baseline quote (ltp, ohlc, depth) per token.

        Accepts the backend's ``{token: quote}`` map as well as a list
        of quotes carrying their own token.
        """
        keys = sorted({t for t in (normalize_token(x) for x in tokens) if t is not None})
        if not keys:
            return {}

        data = await self._request(
            "POST",
            "/api/quotes/snapshot",
            service="snapshot",
            json={"items": [{"instrument_token": k} for k in keys]},
        )

        snapshots: dict[str, Snapshot] = {}
        if isinstance(data, dict):
            items = data.get("data", data)
            for token, quote in items.items():
                if isinstance(quote, dict):
                    snapshots[str(token)] = Snapshot.model_validate(
                        {"instrument_token": str(token), **quote}
                    )
        elif isinstance(data, list):
            for quote in data:
                if not isinstance(quote, dict):
                    continue
                token = normalize_token(
                    quote.get("instrument_token", quote.get("securityId", quote.get("id")))
                )
                if token is not None:
                    snapshots[token] = Snapshot.model_validate({**quote, "instrument_token": token})
        return snapshots
