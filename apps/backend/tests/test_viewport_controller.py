"""
test_viewport_controller.py — Map move → render set pipeline.

Runs on the real 10 ms declutter debounce; wait_for_publish() lets tests
await the pending pass instead of sleeping.
"""

import asyncio
import math

import httpx
import pytest

from discovery.adapters.overpass_adapter import OverpassAdapter
from discovery.models.bridge import MapInitialized, MapMove, MarkerClick, UpdateHotspots, UserLocation
from discovery.models.geo import Coordinate
from discovery.services.geo_sync import ExternalGeoSyncAgent
from discovery.services.viewport_controller import ViewportController, collect_candidates

CENTER = Coordinate(latitude=40.758, longitude=-73.9855)
BROOKLYN = Coordinate(latitude=40.6782, longitude=-73.9442)


def _offset(origin: Coordinate, north: float, east: float) -> Coordinate:
    lat = origin.latitude + north / 69.0
    lng = origin.longitude + east / (69.0 * math.cos(math.radians(origin.latitude)))
    return Coordinate(latitude=lat, longitude=lng)


def _add(store, name, origin, north, east, **kwargs):
    point = _offset(origin, north, east)
    return store.add(name, point.latitude, point.longitude, **kwargs)


async def _eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture()
async def controller(store, sink):
    ctrl = ViewportController(store, sink)
    await ctrl.on_map_initialized()
    yield ctrl
    ctrl.close()


# ── collect_candidates ────────────────────────────────────────────────────────

class TestCollectCandidates:

    async def test_cuts_box_corners_to_exact_radius(self, store):
        inside = _add(store, "inside", CENTER, 0.9, 0)
        # Inside the 1-mile box but ~1.27 mi away
        _add(store, "corner", CENTER, 0.9, 0.9)

        result = await collect_candidates(store, CENTER, 16)

        assert [h.id for h in result] == [inside.id]

    async def test_sorted_by_distance_from_user(self, store):
        _add(store, "north", CENTER, 0.5, 0)
        _add(store, "south", CENTER, -0.5, 0)
        _add(store, "middle", CENTER, 0, 0)
        user = _offset(CENTER, -0.6, 0)

        result = await collect_candidates(store, CENTER, 16, user)

        assert [h.name for h in result] == ["south", "middle", "north"]
        assert result[0].distance_from_user == pytest.approx(0.1, abs=0.005)
        assert result[0].distance_from_viewport_center == pytest.approx(0.5, abs=0.005)

    async def test_viewport_center_stands_in_for_missing_user(self, store):
        _add(store, "near", CENTER, 0.1, 0)
        result = await collect_candidates(store, CENTER, 16)
        assert result[0].distance_from_user == result[0].distance_from_viewport_center

    async def test_live_counts_merged(self, store):
        busy = _add(store, "busy", CENTER, 0.1, 0)
        _add(store, "quiet", CENTER, 0.2, 0)
        store.live_counts = {busy.id: 7}

        result = await collect_candidates(store, CENTER, 16)

        assert {h.name: h.live_user_count for h in result} == {"busy": 7, "quiet": 0}

    async def test_live_count_failure_degrades_to_zero(self, store):
        _add(store, "busy", CENTER, 0.1, 0)
        store.fail_counts = True

        result = await collect_candidates(store, CENTER, 16)

        assert result[0].live_user_count == 0

    async def test_store_failure_propagates(self, store):
        store.fail_queries = True
        with pytest.raises(RuntimeError):
            await collect_candidates(store, CENTER, 16)

    async def test_type_filter_passed_through(self, store):
        _add(store, "cafe", CENTER, 0.1, 0, category="cafe")
        _add(store, "bar", CENTER, 0.2, 0, category="bar")
        result = await collect_candidates(store, CENTER, 16, type_filter=["bar"])
        assert [h.name for h in result] == ["bar"]


# ── ViewportController ────────────────────────────────────────────────────────

class TestViewportChange:

    async def test_low_zoom_publishes_empty_set(self, controller, store, sink):
        for i in range(10):
            _add(store, f"h{i}", CENTER, 0.01 * i, 0)

        await controller.on_viewport_change(CENTER, 13.9)

        assert isinstance(sink.last, UpdateHotspots)
        assert sink.last.hotspots == []
        assert store.queries == []

    async def test_low_zoom_cancels_pending_publish(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)

        await controller.on_viewport_change(CENTER, 16)
        await controller.on_viewport_change(CENTER, 12)
        await asyncio.sleep(0.05)

        assert len(sink.messages) == 1
        assert sink.last.hotspots == []

    async def test_publishes_decluttered_markers(self, controller, store, sink):
        _add(store, "a", CENTER, 0.001, 0, category="bar")
        _add(store, "a-twin", CENTER, 0.002, 0)
        _add(store, "b", CENTER, 0.4, 0)

        await controller.on_viewport_change(CENTER, 16)
        await controller.wait_for_publish()

        markers = sink.last.hotspots
        assert [m.name for m in markers] == ["a", "b"]
        assert markers[0].type == "bar"
        assert markers[0].distance.endswith("ft")

    async def test_burst_of_moves_publishes_once_for_latest(self, controller, store, sink):
        _add(store, "midtown", CENTER, 0, 0)
        _add(store, "brooklyn", BROOKLYN, 0, 0)

        await controller.on_viewport_change(CENTER, 16)
        await controller.on_viewport_change(CENTER, 16.2)
        await controller.on_viewport_change(BROOKLYN, 16)
        await controller.wait_for_publish()
        await asyncio.sleep(0.03)

        assert len(sink.messages) == 1
        assert [m.name for m in sink.last.hotspots] == ["brooklyn"]

    async def test_stale_query_result_discarded(self, controller, store, sink):
        _add(store, "midtown", CENTER, 0, 0)
        _add(store, "brooklyn", BROOKLYN, 0, 0)
        store.query_gate = asyncio.Event()
        gate = store.query_gate

        slow = asyncio.create_task(controller.on_viewport_change(CENTER, 16))
        await asyncio.sleep(0)
        await controller.on_viewport_change(BROOKLYN, 16)
        gate.set()
        await slow
        await controller.wait_for_publish()
        await asyncio.sleep(0.03)

        assert [[m.name for m in msg.hotspots] for msg in sink.messages] == [["brooklyn"]]

    async def test_store_failure_keeps_previous_markers(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)
        await controller.on_viewport_change(CENTER, 16)
        await controller.wait_for_publish()
        before = controller.render_set

        store.fail_queries = True
        await controller.on_viewport_change(CENTER, 17)
        await asyncio.sleep(0.03)

        assert len(sink.messages) == 1
        assert controller.render_set == before

    async def test_user_location_used_for_distances(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)
        controller.on_user_location(_offset(CENTER, 0.5, 0))

        await controller.on_viewport_change(CENTER, 16)
        await controller.wait_for_publish()

        assert controller.render_set[0].distance_from_user == pytest.approx(0.5, abs=0.005)
        assert sink.last.hotspots[0].distance.endswith("ft")

    async def test_sink_failure_is_contained(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)
        sink.fail = True

        await controller.on_viewport_change(CENTER, 16)
        await controller.wait_for_publish()

        assert [h.name for h in controller.render_set] == ["a"]

    async def test_close_cancels_pending_publish(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)

        await controller.on_viewport_change(CENTER, 16)
        controller.close()
        await asyncio.sleep(0.05)

        assert sink.messages == []


class TestMapInitialization:

    async def test_render_set_held_until_map_ready(self, store, sink):
        _add(store, "a", CENTER, 0, 0)
        ctrl = ViewportController(store, sink)

        await ctrl.on_viewport_change(CENTER, 16)
        await ctrl.wait_for_publish()
        assert sink.messages == []

        await ctrl.on_map_initialized()
        assert [m.name for m in sink.last.hotspots] == ["a"]

        await ctrl.on_map_initialized()
        assert len(sink.messages) == 1
        ctrl.close()

    async def test_nothing_sent_when_no_render_set_yet(self, store, sink):
        ctrl = ViewportController(store, sink)
        await ctrl.on_map_initialized()
        assert sink.messages == []


class TestHandleMessage:

    async def test_map_move_dispatch(self, controller, store, sink):
        _add(store, "a", CENTER, 0, 0)
        await controller.handle_message(MapMove(center={"lat": CENTER.latitude, "lng": CENTER.longitude}, zoom=16))
        await controller.wait_for_publish()
        assert controller.viewport.zoom == 16
        assert [m.name for m in sink.last.hotspots] == ["a"]

    async def test_user_location_dispatch(self, controller):
        await controller.handle_message(UserLocation(lat=40.7, lng=-73.9))
        assert controller.user_location == Coordinate(latitude=40.7, longitude=-73.9)

    async def test_map_initialized_dispatch(self, store, sink):
        ctrl = ViewportController(store, sink)
        await ctrl.handle_message(MapInitialized())
        assert ctrl.map_ready is True

    async def test_marker_click_calls_navigator(self, store, sink):
        opened = []

        async def navigator(marker):
            opened.append(marker.id)

        ctrl = ViewportController(store, sink, navigator=navigator)
        click = MarkerClick(hotspot={"id": "h1", "lat": 40.758, "lng": -73.9855})
        await ctrl.handle_message(click)
        assert opened == ["h1"]

    async def test_navigator_failure_is_contained(self, store, sink):
        async def navigator(marker):
            raise RuntimeError("no route")

        ctrl = ViewportController(store, sink, navigator=navigator)
        await ctrl.on_marker_click(MarkerClick(hotspot={"id": "h1", "lat": 0, "lng": 0}).hotspot)

    async def test_marker_click_without_navigator(self, controller):
        await controller.on_marker_click(MarkerClick(hotspot={"id": "h1", "lat": 0, "lng": 0}).hotspot)


class TestSyncIntegration:

    async def test_completed_sync_refreshes_markers(self, store, sink):
        element = {
            "type": "node",
            "id": 9,
            "lat": CENTER.latitude,
            "lon": CENTER.longitude,
            "tags": {"name": "Fresh Cafe", "amenity": "cafe"},
        }
        adapter = OverpassAdapter(
            url="https://overpass.test/api/interpreter",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"elements": [element]})),
        )
        agent = ExternalGeoSyncAgent(store, adapter)
        ctrl = ViewportController(store, sink, sync_agent=agent)
        assert agent.on_synced is not None
        await ctrl.on_map_initialized()

        await ctrl.on_viewport_change(CENTER, 16)
        await _eventually(lambda: bool(sink.messages) and bool(sink.last.hotspots))

        assert [m.name for m in sink.last.hotspots] == ["Fresh Cafe"]
        ctrl.close()

    async def test_low_zoom_does_not_sync(self, store, sink):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"elements": []})

        adapter = OverpassAdapter(url="https://overpass.test/api/interpreter", transport=httpx.MockTransport(handler))
        ctrl = ViewportController(store, sink, sync_agent=ExternalGeoSyncAgent(store, adapter))

        await ctrl.on_viewport_change(CENTER, 10)
        await asyncio.sleep(0.02)

        assert requests == []
        ctrl.close()
