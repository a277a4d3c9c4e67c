from decimal import Decimal

import httpx
import pytest

from conftest import PANEL_KEY, PANEL_URL
from errors import VendorProtocolError, VendorRejected, VendorTransportError
from vendor import SMMPanelAdapter, parse_order_id, parse_services, parse_status


class TestParseServices:
    def test_bare_list(self):
        services = parse_services([{"service": "7", "name": "Likes", "rate": "0.9", "min": "10", "max": "500"}])
        assert len(services) == 1
        svc = services[0]
        assert (svc.service_id, svc.rate, svc.min, svc.max) == (7, Decimal("0.9"), 10, 500)

    def test_wrapped_list(self):
        services = parse_services({"services": [{"service": 8, "name": "Views", "rate": 1}]})
        assert services[0].service_id == 8
        assert (services[0].min, services[0].max) == (1, 1_000_000)

    def test_explicit_error(self):
        with pytest.raises(VendorProtocolError) as exc:
            parse_services({"error": "Invalid API key"})
        assert exc.value.vendor_message == "Invalid API key"

    def test_message_field_is_failure(self):
        with pytest.raises(VendorProtocolError):
            parse_services({"message": "Maintenance", "services": []})

    def test_unexpected_shape(self):
        with pytest.raises(VendorProtocolError):
            parse_services({"data": "nope"})

    def test_skips_entries_without_id(self):
        services = parse_services([{"name": "orphan", "rate": 1}, {"service": 3, "name": "ok", "rate": 1}])
        assert [s.service_id for s in services] == [3]

    def test_unparseable_rate_kept_as_none(self):
        assert parse_services([{"service": 3, "rate": "free"}])[0].rate is None


class TestParseOrderId:
    @pytest.mark.parametrize(
        "raw",
        [
            {"order": 23501},
            {"order_id": "23501"},
            {"data": {"order": 23501}},
            {"data": {"order_id": 23501}},
        ],
    )
    def test_known_shapes(self, raw):
        assert parse_order_id(raw) == "23501"

    def test_error_text_carried(self):
        with pytest.raises(VendorRejected) as exc:
            parse_order_id({"error": "Link already queued"})
        assert exc.value.vendor_message == "Link already queued"

    def test_no_id(self):
        with pytest.raises(VendorRejected) as exc:
            parse_order_id({"status": "fail"})
        assert exc.value.vendor_message == "fail"

    def test_not_an_object(self):
        with pytest.raises(VendorRejected):
            parse_order_id(["order", 1])


class TestParseStatus:
    def test_status(self):
        assert parse_status({"status": " In progress ", "remains": "0"}) == "In progress"

    def test_missing_status(self):
        with pytest.raises(VendorProtocolError) as exc:
            parse_status({"error": "Incorrect order ID"})
        assert exc.value.vendor_message == "Incorrect order ID"

    def test_empty_object(self):
        with pytest.raises(VendorProtocolError):
            parse_status({})


class TestAdapter:
    async def test_list_services_posts_form(self, adapter, panel):
        services = await adapter.list_services()
        assert [s.service_id for s in services] == [100, 200, 300, 400]
        assert panel.requests[-1] == {"key": PANEL_KEY, "action": "services"}

    async def test_place_order_sends_fields(self, adapter, panel):
        order_id = await adapter.place_order(200, 2000, "https://instagram.com/p/abc", comments="hi")
        assert order_id == "9001"
        assert panel.add_calls[-1] == {
            "key": PANEL_KEY,
            "action": "add",
            "service": "200",
            "quantity": "2000",
            "link": "https://instagram.com/p/abc",
            "comments": "hi",
        }

    async def test_place_order_omits_empty_comments(self, adapter, panel):
        await adapter.place_order(200, 2000, "https://instagram.com/p/abc")
        assert "comments" not in panel.add_calls[-1]

    async def test_place_order_rejected(self, adapter, panel):
        panel.add_response = {"error": "Link already queued"}
        with pytest.raises(VendorRejected) as exc:
            await adapter.place_order(200, 2000, "https://instagram.com/p/abc")
        assert exc.value.vendor_message == "Link already queued"

    async def test_status(self, adapter, panel):
        panel.statuses["77"] = "Completed"
        assert await adapter.get_order_status("77") == "Completed"

    async def test_error_body_on_http_error_status(self):
        def handler(request):
            return httpx.Response(403, json={"error": "IP not whitelisted"})

        adapter = SMMPanelAdapter(PANEL_URL, PANEL_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(VendorProtocolError) as exc:
            await adapter.list_services()
        assert exc.value.vendor_message == "IP not whitelisted"

    async def test_http_error_without_body(self):
        def handler(request):
            return httpx.Response(503, text="<html>down</html>")

        adapter = SMMPanelAdapter(PANEL_URL, PANEL_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(VendorTransportError):
            await adapter.place_order(1, 10, "https://x.test/a")

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        adapter = SMMPanelAdapter(PANEL_URL, PANEL_KEY, timeout=0.5, transport=httpx.MockTransport(handler))
        with pytest.raises(VendorTransportError) as exc:
            await adapter.place_order(1, 10, "https://x.test/a")
        assert "timed out" in exc.value.vendor_message

    async def test_non_json_success(self):
        def handler(request):
            return httpx.Response(200, text="OK")

        adapter = SMMPanelAdapter(PANEL_URL, PANEL_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(VendorProtocolError):
            await adapter.get_order_status("1")


class TestParseServiceBounds:
    def test_zero_max_falls_back_to_default(self):
        svc = parse_services([{"service": 9, "name": "Views", "rate": "1", "min": "1", "max": "0"}])[0]
        assert (svc.min, svc.max) == (1, 1_000_000)


class TestOrderIdWithMessage:
    def test_informational_message_does_not_reject(self):
        assert parse_order_id({"order": 23501, "message": "Order queued"}) == "23501"

    def test_message_used_when_no_id(self):
        with pytest.raises(VendorRejected) as exc:
            parse_order_id({"message": "Not enough funds on balance"})
        assert exc.value.vendor_message == "Not enough funds on balance"


class TestAdapterLogging:
    async def test_rejection_logged_under_module_logger(self, adapter, panel, caplog):
        panel.add_response = {"error": "Link already queued"}
        with caplog.at_level("WARNING", logger="vendor"):
            with pytest.raises(VendorRejected):
                await adapter.place_order(200, 2000, "https://instagram.com/p/abc")
        assert [r.name for r in caplog.records if "Link already queued" in r.getMessage()] == ["vendor"]
