"""Map side of the bridge: turns MapUpdateRequests into map surface changes.

The server's sink only enqueues requests; ``MapController.run`` consumes them
and talks to the Geoapify geocoding and routing APIs. Lookup failures are
reported in the chat, never raised back into the bridge.
"""

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

import anyio
import httpx

from maps_bridge.config import Config
from maps_bridge.errors import UpstreamServiceError, extract_error_message
from maps_bridge.tools import Location, MapUpdateRequest, Route

logger = logging.getLogger(__name__)

GEOAPIFY_URL = "https://api.geoapify.com/v1"
LOCATION_ZOOM = 13


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lon: float


class MapSurface(Protocol):
    def clear(self) -> None: ...

    def fly_to(self, point: Coordinates, zoom: int) -> None: ...

    def add_marker(self, point: Coordinates, label: Optional[str] = None) -> None: ...

    def show_route(self, feature: dict, origin: Coordinates, destination: Coordinates) -> None: ...


class GeoapifyClient:
    def __init__(self, config: Config, *, http: Optional[httpx.AsyncClient] = None, base_url: str = GEOAPIFY_URL):
        self.api_key = config.geoapify_api_key
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=30.0)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get(self, path: str, params: dict) -> dict:
        try:
            response = await self._http.get(f"{self.base_url}{path}", params={**params, "apiKey": self.api_key})
        except httpx.HTTPError as e:
            raise UpstreamServiceError(f"Request to {path} failed: {e}") from e
        if response.status_code != 200:
            raise UpstreamServiceError(f"API request failed with status {response.status_code}: {response.text}")
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamServiceError(f"Invalid response from {path}: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamServiceError(f"Invalid response from {path}: expected an object")
        return data

    async def geocode(self, text: str) -> Coordinates:
        data = await self._get("/geocode/search", {"text": text, "limit": 1})
        features = data.get("features") or []
        if not features:
            raise UpstreamServiceError(f"Location not found: {text}")
        try:
            props = features[0]["properties"]
            return Coordinates(lat=float(props["lat"]), lon=float(props["lon"]))
        except (KeyError, TypeError, IndexError, ValueError) as e:
            raise UpstreamServiceError(f"Malformed geocoding result for {text}: {e!r}") from e

    async def route(self, origin: Coordinates, destination: Coordinates, mode: str = "drive") -> dict:
        waypoints = f"{origin.lat},{origin.lon}|{destination.lat},{destination.lon}"
        data = await self._get("/routing", {"waypoints": waypoints, "mode": mode})
        features = data.get("features") or []
        if not features:
            raise UpstreamServiceError("No route found between the locations.")
        if not isinstance(features, list) or not isinstance(features[0], dict):
            raise UpstreamServiceError("Malformed routing result")
        return features[0]

    async def aclose(self):
        await self._http.aclose()


class MapController:
    """Applies map update requests to a surface, one at a time, in order."""

    def __init__(
        self,
        surface: MapSurface,
        geo: GeoapifyClient,
        report_error: Callable[[str], Awaitable[None]],
    ):
        self.surface = surface
        self.geo = geo
        self._report_error = report_error
        self._send, self._receive = anyio.create_memory_object_stream[MapUpdateRequest](math.inf)

    @property
    def ready(self) -> bool:
        return self.geo.configured

    def sink(self, update: MapUpdateRequest):
        """Sink callback for ToolBridgeServer; never blocks and never raises."""
        try:
            self._send.send_nowait(update)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.warning("Map controller closed; dropping %r", update)

    def close(self):
        self._send.close()

    async def run(self):
        """Handle queued updates until ``close`` is called."""
        async with self._receive:
            async for update in self._receive:
                await self.handle(update)

    async def handle(self, update: MapUpdateRequest):
        """Apply one update; failures are reported in the chat and never end ``run``."""
        try:
            if isinstance(update, Location):
                await self.view_location(update.query)
            elif isinstance(update, Route):
                await self.show_directions(update.origin, update.destination)
            else:
                logger.warning("Unsupported map update: %r", update)
        except Exception as e:
            logger.exception("Map update %r failed", update)
            await self._report_error(f"Could not update the map: {extract_error_message(e)}")

    async def view_location(self, query: str):
        if not self.ready:
            await self._not_ready("display locations")
            return
        self.surface.clear()
        try:
            point = await self.geo.geocode(query)
        except UpstreamServiceError as e:
            logger.warning("Geocoding error for %r: %s", query, extract_error_message(e))
            await self._report_error(f"Could not find location: {query}.")
            return
        self.surface.fly_to(point, LOCATION_ZOOM)
        self.surface.add_marker(point)

    async def show_directions(self, origin: str, destination: str):
        if not self.ready:
            await self._not_ready("get directions")
            return
        self.surface.clear()
        try:
            start = await self.geo.geocode(origin)
            end = await self.geo.geocode(destination)
            feature = await self.geo.route(start, end)
        except UpstreamServiceError as e:
            logger.warning("Directions error from %r to %r: %s", origin, destination, extract_error_message(e))
            await self._report_error(f'Could not get directions from "{origin}" to "{destination}".')
            return
        self.surface.show_route(feature, start, end)
        self.surface.add_marker(start, "Origin")
        self.surface.add_marker(end, "Destination")

    async def _not_ready(self, action: str):
        message = f"Map is not ready to {action}. Please check configuration."
        logger.warning(message)
        await self._report_error(message)
