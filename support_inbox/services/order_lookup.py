"""
Order lookup clients.

``OrderLookupClient`` is the narrow contract the verification gate needs;
``ShopifyOrderClient`` implements it over the Shopify Admin GraphQL API.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import requests

from config.settings import settings
from support_inbox.exceptions import ConfigurationError, ExternalServiceError
from support_inbox.models.schemas import (
    Customer, Fulfillment, Order, OrderLineItem, TrackingInfo
)

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = """
    id
    email
    firstName
    lastName
    numberOfOrders
    amountSpent { amount currencyCode }
    tags
    note
"""

GET_CUSTOMER_BY_EMAIL = """
query GetCustomerByEmail($query: String!) {
  customers(first: 1, query: $query) {
    edges { node { %s } }
  }
}
""" % CUSTOMER_FIELDS

GET_ORDER_BY_NUMBER = """
query GetOrderByNumber($query: String!) {
  orders(first: 1, query: $query) {
    edges {
      node {
        id
        name
        email
        createdAt
        displayFinancialStatus
        displayFulfillmentStatus
        tags
        note
        fulfillments(first: 5) {
          trackingInfo { company number url }
        }
        lineItems(first: 10) {
          edges { node { title quantity sku } }
        }
        customer { %s }
      }
    }
  }
}
""" % CUSTOMER_FIELDS


class OrderLookupClient:
    """Contract for order and customer lookups"""

    def is_configured(self) -> bool:
        return False

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        raise NotImplementedError

    async def get_customer_by_email(self, email: str) -> Optional[Customer]:
        raise NotImplementedError


class ShopifyOrderClient(OrderLookupClient):
    def __init__(self, store_domain: Optional[str] = None,
                 access_token: Optional[str] = None,
                 api_version: Optional[str] = None):
        self.store_domain = settings.SHOPIFY_STORE_DOMAIN if store_domain is None else store_domain
        self.access_token = settings.SHOPIFY_ACCESS_TOKEN if access_token is None else access_token
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.timeout = settings.EXTERNAL_CALL_TIMEOUT_SECONDS

    def is_configured(self) -> bool:
        return bool(self.store_domain and self.access_token)

    @property
    def endpoint(self) -> str:
        return f"https://{self.store_domain}/admin/api/{self.api_version}/graphql.json"

    def _post(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        response = requests.post(
            self.endpoint,
            json={"query": query, "variables": variables},
            headers={
                "Content-Type": "application/json",
                "X-Shopify-Access-Token": self.access_token
            },
            timeout=self.timeout
        )
        response.raise_for_status()
        result = response.json()
        if result.get("errors"):
            messages = ", ".join(e.get("message", "") for e in result["errors"])
            raise ExternalServiceError(f"Shopify GraphQL error: {messages}")
        if not result.get("data"):
            raise ExternalServiceError("Shopify API returned no data")
        return result["data"]

    async def _execute(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured():
            raise ConfigurationError("SHOPIFY_STORE_DOMAIN and SHOPIFY_ACCESS_TOKEN must be set")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._post, query, variables),
                timeout=self.timeout
            )
        except ExternalServiceError:
            raise
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("Shopify request timed out") from e
        except requests.RequestException as e:
            raise ExternalServiceError(f"Shopify API error: {e}") from e

    async def get_order_by_number(self, order_number: str) -> Optional[Order]:
        clean_number = order_number.lstrip("#").strip()
        data = await self._execute(GET_ORDER_BY_NUMBER, {"query": f"name:{clean_number}"})
        edges = data.get("orders", {}).get("edges", [])
        if not edges:
            return None
        return self._to_order(edges[0]["node"])

    async def get_customer_by_email(self, email: str) -> Optional[Customer]:
        data = await self._execute(GET_CUSTOMER_BY_EMAIL, {"query": f"email:{email}"})
        edges = data.get("customers", {}).get("edges", [])
        if not edges:
            return None
        return self._to_customer(edges[0]["node"])

    @staticmethod
    def _to_customer(node: Dict[str, Any]) -> Customer:
        amount = (node.get("amountSpent") or {}).get("amount")
        return Customer(
            id=node["id"],
            email=node.get("email"),
            first_name=node.get("firstName"),
            last_name=node.get("lastName"),
            orders_count=node.get("numberOfOrders"),
            total_spent=float(amount) if amount is not None else None,
            tags=node.get("tags") or [],
            note=node.get("note")
        )

    def _to_order(self, node: Dict[str, Any]) -> Order:
        fulfillments = [
            Fulfillment(tracking_info=[
                TrackingInfo(carrier=t.get("company"), tracking_number=t.get("number"),
                             tracking_url=t.get("url"))
                for t in f.get("trackingInfo") or []
            ])
            for f in node.get("fulfillments") or []
        ]
        line_items = [
            OrderLineItem(title=e["node"]["title"], quantity=e["node"].get("quantity") or 1,
                          sku=e["node"].get("sku"))
            for e in (node.get("lineItems") or {}).get("edges", [])
        ]
        return Order(
            id=node["id"],
            name=node["name"],
            email=node.get("email"),
            financial_status=node.get("displayFinancialStatus"),
            fulfillment_status=node.get("displayFulfillmentStatus"),
            created_at=node.get("createdAt"),
            tags=node.get("tags") or [],
            note=node.get("note"),
            customer=self._to_customer(node["customer"]) if node.get("customer") else None,
            line_items=line_items,
            fulfillments=fulfillments
        )


# Global order lookup instance
order_client = ShopifyOrderClient()
