"""Async client for the route/stop directory and schedule service."""

import asyncio
import datetime
import logging

import httpx

from eta_engine.config import settings
from eta_engine.core.eta_calculator import ScheduledTimes
from eta_engine.core.route_index import RouteStop

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF = [2, 4, 8]  # seconds between retries


def _parse_time(raw) -> datetime.datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not raw:
        return None
    try:
        value = datetime.datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value


class DirectoryClient:
    """Fetches ordered route stops and stop schedules over HTTP."""

    def __init__(self, base_url: str | None = None) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.directory_base_url,
            timeout=15.0,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, path: str, label: str) -> httpx.Response | None:
        """GET request with retry and exponential backoff."""
        for attempt in range(MAX_RETRIES + 1):
            try:
                resp = await self._client.get(path)
                resp.raise_for_status()
                return resp
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    logger.error("%s failed after %d attempts: %s", label, MAX_RETRIES + 1, e)
                    return None
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < MAX_RETRIES:
                    wait = RETRY_BACKOFF[attempt]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ds",
                        label, attempt + 1, MAX_RETRIES + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    if e.response.status_code != 404:
                        logger.error("Failed to fetch %s from directory: %s", label, e)
                    return None
            except Exception:
                logger.exception("Failed to fetch %s from directory", label)
                return None
        return None

    async def get_route_stops(self, route_id: str) -> list[RouteStop]:
        """Ordered stop list for a route; empty if unavailable."""
        resp = await self._get_with_retry(f"/routes/{route_id}/stops", f"route {route_id} stops")
        if resp is None:
            return []
        try:
            data = resp.json()
        except Exception:
            logger.exception("Failed to parse stops response for route %s", route_id)
            return []

        items = data if isinstance(data, list) else data.get("stops", [])
        ordered = []
        for idx, item in enumerate(items):
            try:
                order = int(item.get("order", item.get("stop_sequence", item.get("sequence", idx))))
                ordered.append((order, RouteStop(
                    stop_id=str(item.get("stop_id", item.get("id"))),
                    lat=float(item.get("lat", item.get("latitude"))),
                    lon=float(item.get("lon", item.get("longitude", item.get("lng")))),
                    name=str(item.get("name", "")),
                )))
            except (ValueError, TypeError, AttributeError) as e:
                logger.debug("Skipping malformed stop record on route %s: %s", route_id, e)
                continue

        ordered.sort(key=lambda pair: pair[0])
        stops = [s for _, s in ordered]
        logger.info("Fetched %d stops for route %s", len(stops), route_id)
        return stops

    async def get_scheduled_times(self, route_id: str, stop_id: str) -> ScheduledTimes | None:
        """Timetable for a stop: departure and per-stop arrival offsets (minutes)."""
        resp = await self._get_with_retry(
            f"/routes/{route_id}/stops/{stop_id}/schedule", f"schedule {route_id}/{stop_id}",
        )
        if resp is None:
            return None
        try:
            data = resp.json()
            raw_offsets = data.get("scheduled_arrival_offsets", data.get("scheduledArrivalOffsets", {}))
            if isinstance(raw_offsets, list):
                offsets = {str(o["stop_id"]): float(o["offset_minutes"]) for o in raw_offsets}
            else:
                offsets = {str(k): float(v) for k, v in raw_offsets.items()}
            return ScheduledTimes(
                departure=_parse_time(data.get("departure", data.get("departure_time"))),
                scheduled_arrival_offsets=offsets,
            )
        except Exception:
            logger.exception("Failed to parse schedule for route %s stop %s", route_id, stop_id)
            return None
