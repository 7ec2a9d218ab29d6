from __future__ import annotations

import re
from typing import Iterable

from cozyauth.config import PRIMARY_DOMAIN

DEFAULT_TENANT_ID = "cmg-default"
_HOSTNAME = re.compile(
    r"(?i)[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)*"
)


def resolve_tenant_id(hostname: str, *, primary_domain: str = PRIMARY_DOMAIN) -> str:
    """Map a request hostname to a tenant id.

    ``cozyartzmedia.com``, ``www.cozyartzmedia.com`` and ``localhost`` belong
    to the default tenant; a single-label subdomain of the primary domain is a
    partner; anything else is a custom domain. Never raises.
    """
    hostname = hostname if isinstance(hostname, str) else str(hostname)
    if hostname in (primary_domain, f"www.{primary_domain}", "localhost"):
        return DEFAULT_TENANT_ID
    match = re.fullmatch(rf"([^.]+)\.{re.escape(primary_domain)}", hostname)
    if match:
        return f"partner-{match.group(1)}"
    return _custom_tenant_id(hostname)


def is_known_tenant_domain(
    hostname: str,
    *,
    primary_domain: str = PRIMARY_DOMAIN,
    custom_domains: Iterable[str] = (),
) -> bool:
    """True for the primary domain, its partner subdomains and listed custom domains.

    Only these hosts may appear in emailed links or login redirects.
    """
    if not isinstance(hostname, str) or not _HOSTNAME.fullmatch(hostname):
        return False
    if resolve_tenant_id(hostname, primary_domain=primary_domain) != _custom_tenant_id(hostname):
        return True
    return hostname.lower() in {domain.strip().lower() for domain in custom_domains}


def _custom_tenant_id(hostname: str) -> str:
    return "custom-" + hostname.replace(".", "-")


def client_domain_for_tenant(tenant_id: str, *, primary_domain: str = PRIMARY_DOMAIN) -> str:
    if tenant_id == DEFAULT_TENANT_ID:
        return primary_domain
    return f"{tenant_id}.{primary_domain}"


def default_redirect_url(tenant_domain: str) -> str:
    return f"https://{tenant_domain}/auth/callback"
