"""
Tenancy and role gating.

A user reaches /company/<slug>/... only through a membership (user_companies) in that
company. What they can do there comes from the membership role; site admins get a
few extra capabilities on top (document types, archive, site administration).
"""
from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, redirect, request, url_for

from app.docportal.constants import ROLE_CAPABILITIES, SITE_ADMIN_CAPABILITIES
from app.docportal.db import db_session
from app.docportal.models import Company, User, UserCompany


def membership_for(user: User | None, company: Company | None) -> UserCompany | None:
    if not user or not company:
        return None
    for m in user.memberships:
        if m.company_id == company.id:
            return m
    return None


def user_capabilities(user: User | None, membership: UserCompany | None) -> frozenset[str]:
    if not user or not user.is_active:
        return frozenset()
    caps: set[str] = set()
    if membership is not None:
        caps |= ROLE_CAPABILITIES.get(membership.role, frozenset())
    if user.is_site_admin:
        caps |= SITE_ADMIN_CAPABILITIES
    return frozenset(caps)


def user_can(user: User | None, membership: UserCompany | None, capability: str) -> bool:
    return capability in user_capabilities(user, membership)


def _login_redirect():
    nxt = request.full_path or request.path
    # Avoid trailing '?' from full_path when there is no query string.
    if nxt.endswith("?"):
        nxt = nxt[:-1]
    return redirect(url_for("auth.login_get", next=nxt))


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        return fn(*args, **kwargs)

    return wrapped


def require_site_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return _login_redirect()
        if not user.is_site_admin:
            g.missing_permission = "SITE_ADMIN"
            abort(403)
        return fn(*args, **kwargs)

    return wrapped


def require_company(capability: str | None = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Resolve the company from the `slug` URL value and check the current user's access.

    Sets g.company and g.membership for the view and templates.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated -> redirect to login (UX + reduces confusion).
            if not user or not user.is_active:
                return _login_redirect()

            slug = (kwargs.get("slug") or "").strip().lower()
            s = db_session()
            company = s.query(Company).filter(Company.slug == slug).one_or_none()
            if not company or not company.is_active:
                abort(404)

            membership = membership_for(user, company)
            # Site admins may manage any company without being a member.
            if membership is None and not user.is_site_admin:
                g.missing_permission = f"membership:{company.slug}"
                abort(403)

            g.company = company
            g.membership = membership
            if capability and not user_can(user, membership, capability):
                g.missing_permission = capability
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
