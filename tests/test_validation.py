"""Tests for request validation and subdomain suggestions."""

import pytest

from app.services.errors import ValidationError
from app.services.validation import (
    is_valid_custom_domain,
    is_valid_namespace,
    is_valid_subdomain,
    subdomain_candidates,
    validate_request,
)


def test_valid_request_is_normalized(make_request):
    values = validate_request(make_request(
        subdomain="  ACME-Shop ",
        custom_domain="Shop.Acme.IO.",
        admin_email="Ada@Acme.IO",
        primary_color="#10B981",
        billing_cycle="Yearly",
    ))
    assert values["subdomain"] == "acme-shop"
    assert values["custom_domain"] == "shop.acme.io"
    assert values["admin_email"] == "Ada@acme.io"
    assert values["primary_color"] == "#10b981"
    assert values["billing_cycle"] == "yearly"
    assert values["public_access"] is True


def test_optional_fields_default_to_none(make_request):
    values = validate_request(make_request())
    assert values["custom_domain"] is None
    assert values["primary_color"] is None


@pytest.mark.parametrize("subdomain", ["a", "-acme", "acme-", "acme_shop", "acme.shop", "a" * 64])
def test_invalid_subdomain(make_request, subdomain):
    with pytest.raises(ValidationError) as exc_info:
        validate_request(make_request(subdomain=subdomain))
    assert set(exc_info.value.errors) == {"subdomain"}
    assert exc_info.value.code == "validation"
    assert exc_info.value.retryable is False


def test_all_errors_reported_together(make_request):
    with pytest.raises(ValidationError) as exc_info:
        validate_request(make_request(
            company_name="A",
            admin_first_name="B",
            admin_last_name="x" * 51,
            admin_email="not-an-email",
            primary_color="green",
            billing_cycle="weekly",
            custom_domain="localhost",
        ))
    assert set(exc_info.value.errors) == {
        "company_name",
        "admin_first_name",
        "admin_last_name",
        "admin_email",
        "primary_color",
        "billing_cycle",
        "custom_domain",
    }


def test_plan_id_required(make_request):
    with pytest.raises(ValidationError) as exc_info:
        validate_request(make_request(plan_id=""))
    assert "plan_id" in exc_info.value.errors


def test_custom_domain_rules():
    assert is_valid_custom_domain("shop.acme.io")
    assert not is_valid_custom_domain("acme")
    assert not is_valid_custom_domain("acme.123")
    assert not is_valid_custom_domain("-acme.io")


def test_namespace_accepts_subdomain_or_domain():
    assert is_valid_subdomain("ab")
    assert is_valid_namespace("acme")
    assert is_valid_namespace("shop.acme.io")
    assert not is_valid_namespace("acme shop")


def test_subdomain_candidates():
    candidates = subdomain_candidates("Acme Corp!")
    assert candidates[0] == "acmecorp"
    assert "acmecorpshop" in candidates
    assert "acmecorp01" in candidates
    assert all(is_valid_subdomain(c) for c in candidates)


def test_subdomain_candidates_empty_base():
    assert subdomain_candidates("!!!") == []
