"""Client for the government fuel catalog and daily price report APIs."""

from __future__ import annotations

import logging
from typing import Any

from fuelintel.config import ApiConfig
from fuelintel.core.errors import HttpClientError, MalformedResponseError
from fuelintel.core.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class GovernmentApiClient:
    """Typed access to estados, municipios and station prices.

    Responses are returned as the upstream's raw dicts; parsing happens in
    DataParser so this layer only checks the response shape.
    """

    def __init__(self, http: ResilientHttpClient, config: ApiConfig | None = None):
        self.http = http
        self.config = config or ApiConfig()

    @property
    def estados_url(self) -> str:
        return f"{self.config.catalog_base}/entidadesfederativas"

    @property
    def municipios_url(self) -> str:
        return f"{self.config.catalog_base}/municipios"

    @property
    def prices_url(self) -> str:
        return f"{self.config.pricing_base}/Petroliferos"

    async def fetch_estados(self, *, skip_rate_limit: bool = False) -> list[dict]:
        """Fetch the list of estados (federal entities).

        Raises:
            MalformedResponseError: If the body is not a JSON array
            HttpClientError: On transport or HTTP failure
        """
        response = await self.http.get(self.estados_url, skip_rate_limit=skip_rate_limit)
        estados = self._expect_list(response, self.estados_url)

        if len(estados) != self.config.expected_estados:
            logger.warning(
                f"Expected {self.config.expected_estados} estados, got {len(estados)}"
            )
        logger.info(f"Fetched {len(estados)} estados")
        return estados

    async def fetch_municipios(self, estado_id: int) -> list[dict]:
        """Fetch the municipios of one estado.

        Raises:
            MalformedResponseError: If the body is not a JSON array
            HttpClientError: On transport or HTTP failure
        """
        response = await self.http.get(
            self.municipios_url, params={"EntidadFederativaId": estado_id}
        )
        municipios = self._expect_list(response, self.municipios_url)
        logger.info(f"Fetched {len(municipios)} municipios for estado {estado_id}")
        return municipios

    async def fetch_station_prices(self, estado_id: int, municipio_id: int | str) -> list[dict]:
        """Fetch the raw price rows for one municipio.

        The upstream answers ``{"error": ...}`` for municipios without data;
        that, and any other non-list body, yields an empty list.
        """
        response = await self.http.get(
            self.prices_url,
            params={"entidadId": estado_id, "municipioId": municipio_id},
        )

        if isinstance(response, list):
            logger.debug(
                f"Fetched {len(response)} station prices for municipio {municipio_id}"
            )
            return response

        if isinstance(response, dict) and "error" in response:
            logger.warning(f"No data for municipio {municipio_id}: {response['error']}")
        else:
            logger.warning(f"Unexpected response for municipio {municipio_id}: {response!r}")
        return []

    async def test_connection(self) -> bool:
        """Check the catalog API answers with at least one estado."""
        try:
            estados = await self.fetch_estados(skip_rate_limit=True)
        except HttpClientError as e:
            logger.error(f"Government API connection test failed: {e}")
            return False
        return len(estados) > 0

    @staticmethod
    def _expect_list(response: Any, url: str) -> list[dict]:
        if not isinstance(response, list):
            raise MalformedResponseError(f"Expected a JSON array from {url}, got {response!r}", url=url)
        return response
