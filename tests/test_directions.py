"""
Tests for the Google Directions wrapper used by trip enrichment.
"""

import httpx
import pytest

from gigsync.directions import GoogleDirectionsClient, RouteResult, sum_route_legs


def _directions_payload():
    return {
        "status": "OK",
        "routes": [{
            "legs": [
                {"distance": {"value": 8000}, "duration": {"value": 600}},
                {"distance": {"value": 8093}, "duration": {"value": 690}},
            ]
        }],
    }


class TestSumRouteLegs:
    def test_sums_every_leg(self):
        assert sum_route_legs(_directions_payload()) == RouteResult(16093, 1290)

    @pytest.mark.parametrize("payload", [
        {},
        {"status": "ZERO_RESULTS", "routes": []},
        {"status": "OK", "routes": []},
    ])
    def test_no_route(self, payload):
        assert sum_route_legs(payload) is None


class TestGoogleDirectionsClient:
    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_MAPS_API_KEY", raising=False)
        with pytest.raises(RuntimeError):
            GoogleDirectionsClient()

    @pytest.mark.asyncio
    async def test_route_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_directions_payload())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        directions = GoogleDirectionsClient(api_key="k", client=client)

        result = await directions.route("A St", "B St", ["C St", "", "D St"])

        assert result.distance_meters == 16093
        params = seen[0].url.params
        assert params["origin"] == "A St"
        assert params["waypoints"] == "C St|D St"
        assert params["key"] == "k"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_raises_runtime_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(403, text="denied")))
        directions = GoogleDirectionsClient(api_key="k", client=client)
        with pytest.raises(RuntimeError, match="denied"):
            await directions.route("A", "B")
        await client.aclose()
