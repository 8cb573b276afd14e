"""Business rules for provisioning requests and namespace names."""

from __future__ import annotations

import re

from email_validator import EmailNotValidError, validate_email

from app.models.request import ProvisioningRequest
from app.services.errors import ValidationError

SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
SUBDOMAIN_MIN_LENGTH = 2
DOMAIN_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
TLD_RE = re.compile(r"^[a-z]{2,63}$")
COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
PLAN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")

COMPANY_NAME_BOUNDS = (2, 100)
PERSON_NAME_BOUNDS = (2, 50)
BILLING_CYCLES = ("monthly", "yearly")

MAX_SUGGESTIONS = 5
SUGGESTION_SUFFIXES = ("shop", "store", "marketplace", "01", "02", "03")


def is_valid_subdomain(name: str) -> bool:
    return len(name) >= SUBDOMAIN_MIN_LENGTH and bool(SUBDOMAIN_RE.match(name))


def is_valid_custom_domain(name: str) -> bool:
    """Fully-qualified domain name with at least two labels."""
    if len(name) > 253:
        return False
    labels = name.split(".")
    if len(labels) < 2:
        return False
    if not TLD_RE.match(labels[-1]):
        return False
    return all(DOMAIN_LABEL_RE.match(label) for label in labels)


def normalize_namespace(name: str) -> str:
    return name.strip().lower().rstrip(".")


def is_valid_namespace(name: str) -> bool:
    """Either a subdomain or a custom domain, after normalization."""
    return is_valid_subdomain(name) or is_valid_custom_domain(name)


def _check_length(value: str, bounds: tuple[int, int]) -> str | None:
    low, high = bounds
    if not low <= len(value) <= high:
        return f"must be between {low} and {high} characters"
    return None


def validate_request(request: ProvisioningRequest) -> dict:
    """Check every field and return the normalized values.

    Collects all problems before raising so the caller sees them at once.
    """
    errors: dict[str, str] = {}

    subdomain = normalize_namespace(request.subdomain)
    if not is_valid_subdomain(subdomain):
        errors["subdomain"] = (
            "must be 2-63 lowercase letters, digits or hyphens, "
            "and not start or end with a hyphen"
        )

    custom_domain = None
    if request.custom_domain:
        custom_domain = normalize_namespace(request.custom_domain)
        if not is_valid_custom_domain(custom_domain):
            errors["custom_domain"] = "must be a fully-qualified domain name"

    company_name = request.company_name.strip()
    if reason := _check_length(company_name, COMPANY_NAME_BOUNDS):
        errors["company_name"] = reason

    first_name = request.admin_first_name.strip()
    if reason := _check_length(first_name, PERSON_NAME_BOUNDS):
        errors["admin_first_name"] = reason
    last_name = request.admin_last_name.strip()
    if reason := _check_length(last_name, PERSON_NAME_BOUNDS):
        errors["admin_last_name"] = reason

    admin_email = request.admin_email
    try:
        admin_email = validate_email(request.admin_email, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        errors["admin_email"] = str(exc)

    primary_color = request.primary_color
    if primary_color is not None:
        if not COLOR_RE.match(primary_color):
            errors["primary_color"] = "must be a hex color like #10b981"
        else:
            primary_color = primary_color.lower()

    if not PLAN_ID_RE.match(request.plan_id):
        errors["plan_id"] = "must be a plan identifier"

    billing_cycle = request.billing_cycle.lower()
    if billing_cycle not in BILLING_CYCLES:
        errors["billing_cycle"] = f"must be one of {', '.join(BILLING_CYCLES)}"

    if errors:
        raise ValidationError(errors)

    return {
        "subdomain": subdomain,
        "custom_domain": custom_domain,
        "company_name": company_name,
        "admin_first_name": first_name,
        "admin_last_name": last_name,
        "admin_email": admin_email,
        "public_access": request.public_access,
        "primary_color": primary_color,
        "plan_id": request.plan_id,
        "billing_cycle": billing_cycle,
    }


def subdomain_candidates(base_name: str) -> list[str]:
    """Candidate subdomains derived from a company name, best first."""
    clean = re.sub(r"[^a-z0-9]", "", base_name.lower())[:20]
    if not clean:
        return []
    candidates = [clean] + [f"{clean}{suffix}" for suffix in SUGGESTION_SUFFIXES]
    return [c for c in candidates if is_valid_subdomain(c)]
