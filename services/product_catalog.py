"""
Product pricing collaborator
Catalog management lives elsewhere; this module only reads unit prices and stock
"""

import logging
import httpx
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional, Tuple

from payment_errors import OrderValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductQuote:
    product_id: str
    name: str
    unit_price: Decimal
    currency: str
    stock_quantity: Optional[int] = None


class ProductCatalog(ABC):

    @abstractmethod
    async def get_product(self, server_id: str, product_id: str) -> Optional[ProductQuote]:
        """Return the product offered by the server, or None when unknown"""


class StaticProductCatalog(ProductCatalog):
    """Catalog held in memory, keyed by (server_id, product_id)"""

    def __init__(self, products: Optional[Dict[Tuple[str, str], ProductQuote]] = None):
        self._products = dict(products or {})

    def add(self, server_id: str, quote: ProductQuote) -> None:
        self._products[(server_id, quote.product_id)] = quote

    async def get_product(self, server_id: str, product_id: str) -> Optional[ProductQuote]:
        return self._products.get((server_id, product_id))


class HttpProductCatalog(ProductCatalog):
    """Reads products from the storefront API: GET {base}/servers/{server_id}/products/{product_id}"""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._transport = transport

    async def get_product(self, server_id: str, product_id: str) -> Optional[ProductQuote]:
        url = f"{self.base_url}/servers/{server_id}/products/{product_id}"
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
            response = await client.get(url)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        data = response.json()
        try:
            return ProductQuote(
                product_id=str(data.get('id', product_id)),
                name=str(data.get('name', '')),
                unit_price=Decimal(str(data['price'])),
                currency=str(data.get('currency', 'USD')).upper(),
                stock_quantity=int(data['stock_quantity']) if data.get('stock_quantity') is not None else None
            )
        except (KeyError, InvalidOperation, TypeError, ValueError) as e:
            logger.error(f"❌ Catalog returned an unusable product {product_id}: {e}")
            raise OrderValidationError(f"Product {product_id} has no usable price") from e
