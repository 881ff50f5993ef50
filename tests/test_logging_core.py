# -*- coding: utf-8 -*-
from __future__ import annotations

import logging

import pytest

from paygate.app.core.logging_core import (
    MASK,
    ContextFilter,
    RedactingFilter,
    clear_request_context,
    current_context,
    log_context,
    set_request_context,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("paygate.test", logging.INFO, __file__, 1, msg, None, None)
    record.__dict__.update(extra)
    return record


def test_log_context_restores_previous_fields():
    clear_request_context()
    set_request_context(request_id="r1")

    with log_context(invoice_id="inv_1", delivery_id="d_1"):
        assert current_context() == {"rid": "r1", "iid": "inv_1", "did": "d_1"}
        with log_context(job="expire_invoices"):
            assert current_context()["job"] == "expire_invoices"
        assert "job" not in current_context()

    assert current_context() == {"rid": "r1"}
    clear_request_context()


def test_unknown_context_field_is_rejected():
    with pytest.raises(TypeError):
        with log_context(merchant="m_1"):
            pass


def test_context_filter_fills_fields():
    clear_request_context()
    record = _record()

    with log_context(invoice_id="inv_9"):
        ContextFilter(env="dev", service="Paygate").filter(record)

    assert record.iid == "inv_9"
    assert record.rid == "-"
    assert record.env == "dev"
    assert record.svc == "Paygate"


def test_redacting_filter_masks_secrets_and_sensitive_extras():
    flt = RedactingFilter(["super-secret-key", ""])
    record = _record("using super-secret-key now", mnemonic="abandon ability", custody_handle="h-1", wallet_id=3)

    flt.filter(record)

    assert record.msg == f"using {MASK} now"
    assert record.mnemonic == MASK
    assert record.custody_handle == MASK
    assert record.wallet_id == 3
