"""Tests for mapping provisioning errors to HTTP responses."""

from __future__ import annotations

import pytest
from provisioning_engine.errors import (
    BindingNotFound,
    CloneAttemptsExhausted,
    ContentLocked,
    DnsRejected,
    DomainConflict,
    InvalidDomain,
    InvalidTransition,
    MalformedEncoding,
    ProviderTransient,
    ProvisioningError,
    StateConflict,
    TemplateNotFound,
    TenantNotFound,
)

from api.main import status_for_error


class TestStatusForError:
    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (TenantNotFound("tenant T1 does not exist"), 404),
            (TemplateNotFound("template TPL-X does not exist"), 404),
            (BindingNotFound("binding b1 does not exist"), 404),
            (DomainConflict("shop.acme.com is already bound"), 409),
            (StateConflict("stale version"), 409),
            (InvalidTransition("active -> pending"), 409),
            (CloneAttemptsExhausted("budget spent", attempts=5), 409),
            (ContentLocked("content is locked"), 423),
            (InvalidDomain("bad name"), 422),
            (MalformedEncoding("bad length prefix", offset=4), 422),
            (DnsRejected("record refused"), 422),
            (ProviderTransient("timeout"), 503),
            (ProvisioningError("anything else"), 400),
        ],
    )
    def test_status_codes(self, error: ProvisioningError, status_code: int) -> None:
        assert status_for_error(error) == status_code

    def test_user_message_names_failing_step(self) -> None:
        assert DnsRejected("record refused").user_message == "dns: record refused"
        assert ContentLocked("content is locked").user_message == "content: content is locked"
