"""
日志处理器测试
"""
from sf_core.utils.logger import ContactMaskingProcessor, LogContext, ShelfFlowProcessor, mask_phone


class TestContactMasking:
    """联系方式脱敏"""

    def test_email_in_nested_payload(self):
        masked = ContactMaskingProcessor()(None, "info", {
            "event": "Projected record violates index schema",
            "payload": {"email": "ada@example.com", "notes": ["reach ada.l@example.co.uk"]},
        })
        assert masked["payload"]["email"] == "a***@example.com"
        assert masked["payload"]["notes"] == ["reach a***@example.co.uk"]

    def test_phone_keeps_last_digits(self):
        masked = ContactMaskingProcessor()(None, "info", {"phone": "+44 20 7946 0123", "entity_id": "cu1"})
        assert masked["phone"] == "***123"
        assert masked["entity_id"] == "cu1"
        assert mask_phone("12") == "***"


class TestShelfFlowProcessor:
    """上下文字段"""

    def test_context_fields(self):
        with LogContext(trace_id="evt-1", index="inventory"):
            event = ShelfFlowProcessor()(None, "info", {"event": "Change projected"})
        assert event == {"trace_id": "evt-1", "index": "inventory", "action": "Change projected"}

    def test_explicit_index_wins(self):
        with LogContext(index="products"):
            event = ShelfFlowProcessor()(None, "info", {"event": "x", "index": "customers"})
        assert event["index"] == "customers"
