"""
Tests for the domain error taxonomy.
"""

from ghostwatch.domain.errors import (
    DomainError,
    ProcessingTimeout,
    ProviderCapabilityDenied,
    ProviderDataError,
    ProviderError,
    ProviderRateLimited,
    ProviderTransient,
)


def test_provider_errors_share_base():
    for cls in (ProviderTransient, ProviderCapabilityDenied, ProviderDataError):
        assert issubclass(cls, ProviderError)
        assert issubclass(cls, DomainError)


def test_rate_limited_carries_seconds():
    err = ProviderRateLimited(30)
    assert err.seconds == 30
    assert err.code == 420
    assert "30" in str(err)


def test_data_error_identity_flag():
    assert ProviderDataError("gone").identity_changed is False
    assert ProviderDataError("gone", identity_changed=True).identity_changed is True


def test_processing_timeout_message():
    err = ProcessingTimeout(job_id=3, timeout=1.5)
    assert err.job_id == 3
    assert "1.5" in str(err)
