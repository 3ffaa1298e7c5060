"""UniFi Network controller adapter over its REST API.

ENDPOINTS (relative to the API root):
    GET    /s/{site}/rest/portforward         list rules
    POST   /s/{site}/rest/portforward         create a rule
    PUT    /s/{site}/rest/portforward/{id}    rewrite a rule in place
    DELETE /s/{site}/rest/portforward/{id}    delete a rule

UniFi OS consoles serve the API under /proxy/network and log in through
/api/auth/login; standalone controllers use /api and /api/login. The style
is detected once, from whether the base URL answers 200 (UniFi OS) or
redirects (standalone).

AUTHENTICATION:
An API key is sent as X-Api-Key on every request (UniFi OS only).
Otherwise the adapter logs in with username and password and keeps the
session cookie plus CSRF token. A 401 triggers one re-login and one retry.

Rules are matched by external port and protocol, the way the controller's
own UI identifies them. Rules whose ports are ranges or lists are not
representable as PortRule and are skipped when listing.
"""

from __future__ import annotations

import logging
import threading
from typing import Any

import httpx

from ..config import RouterConfig
from ..errors import RouterError, RuleNotFoundError
from ..models import ANY_SOURCE, DEFAULT_INTERFACE, PortRule, RouterRule

logger = logging.getLogger(__name__)

UNIFI_OS_API_ROOT = "/proxy/network/api"
UNIFI_OS_LOGIN_PATH = "/api/auth/login"
LEGACY_API_ROOT = "/api"
LEGACY_LOGIN_PATH = "/api/login"

API_KEY_HEADER = "X-Api-Key"
CSRF_HEADER = "X-Csrf-Token"
UPDATED_CSRF_HEADER = "X-Updated-Csrf-Token"


class UnifiRouter:
    """Router collaborator backed by a UniFi Network controller.

    Args:
        config: Connection settings.
        client: Preconfigured httpx client; built from ``config`` when omitted.
            Tests pass one with an ``httpx.MockTransport``.
    """

    def __init__(self, config: RouterConfig, client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = client or httpx.Client(
            base_url=config.url,
            verify=config.verify_tls,
            timeout=float(config.timeout_seconds),
        )
        self._lock = threading.Lock()
        self._api_root: str | None = None
        self._login_path: str | None = None
        self._csrf_token: str | None = None
        self._logged_in = False

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # =========================================================================
    # Router protocol
    # =========================================================================

    def list(self) -> list[RouterRule]:
        rules: list[RouterRule] = []
        for item in self._request("GET", self._collection()):
            rule = _to_router_rule(item)
            if rule is None:
                logger.debug(
                    "Skipping unsupported port forward rule",
                    extra={"rule_id": item.get("_id"), "dst_port": item.get("dst_port")},
                )
                continue
            rules.append(rule)
        return rules

    def add(self, rule: PortRule) -> None:
        if not rule.destination_ip:
            raise RouterError(f"refusing to create rule {rule.name} without a forward IP")
        self._request("POST", self._collection(), json=self._payload(rule))
        logger.info(
            "Created port forward rule",
            extra={"rule_name": rule.name, "external_port": rule.external_port, "protocol": rule.protocol},
        )

    def update(self, external_port: int, rule: PortRule) -> None:
        existing = self._find(external_port, rule.protocol)
        if existing is None:
            raise RuleNotFoundError(f"port forward rule for port {external_port} ({rule.protocol}) not found")

        rule_id = existing["_id"]
        self._request("PUT", f"{self._collection()}/{rule_id}", json=self._payload(rule, rule_id))
        logger.info(
            "Updated port forward rule",
            extra={
                "rule_id": existing["_id"],
                "external_port": external_port,
                "previous_name": existing.get("name"),
                "rule_name": rule.name,
                "destination_ip": rule.destination_ip,
            },
        )

    def remove(self, rule: PortRule) -> None:
        existing = self._find(rule.external_port, rule.protocol)
        if existing is None:
            logger.debug(
                "Port forward rule already absent",
                extra={"external_port": rule.external_port, "protocol": rule.protocol},
            )
            return

        self._request("DELETE", f"{self._collection()}/{existing['_id']}")
        logger.info(
            "Deleted port forward rule",
            extra={"rule_id": existing["_id"], "rule_name": existing.get("name"), "external_port": rule.external_port},
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _find(self, external_port: int, protocol: str) -> dict[str, Any] | None:
        for item in self._request("GET", self._collection()):
            same_port = _parse_port(item.get("dst_port")) == external_port
            if same_port and str(item.get("proto", "")).lower() == protocol.lower():
                return item
        return None

    def _collection(self) -> str:
        return f"/s/{self._config.site}/rest/portforward"

    def _payload(self, rule: PortRule, rule_id: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": rule.name,
            "enabled": rule.enabled,
            "proto": rule.protocol,
            "src": rule.source or ANY_SOURCE,
            "dst_port": str(rule.external_port),
            "fwd": rule.destination_ip,
            "fwd_port": str(rule.internal_port),
            "pfwd_interface": rule.interface,
        }
        if rule_id is not None:
            payload["_id"] = rule_id
        return payload

    def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Send one API request, re-authenticating once on 401.

        Raises:
            RouterError: On transport errors, non-2xx responses or an error envelope.
        """
        self._ensure_session()
        response = self._send(method, path, json)

        if response.status_code == 401 and not self._config.api_key:
            logger.info("Authentication failure detected, reauthenticating", extra={"method": method, "path": path})
            with self._lock:
                self._logged_in = False
            self._ensure_session()
            response = self._send(method, path, json)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RouterError(f"{method} {path} failed with HTTP {response.status_code}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise RouterError(f"{method} {path} returned invalid JSON") from e

        meta = body.get("meta") or {}
        if meta.get("rc", "ok") != "ok":
            raise RouterError(f"{method} {path} rejected: {meta.get('msg', 'unknown error')}")
        return body.get("data") or []

    def _send(self, method: str, path: str, json: dict[str, Any] | None) -> httpx.Response:
        headers: dict[str, str] = {}
        if self._config.api_key:
            headers[API_KEY_HEADER] = self._config.api_key
        elif self._csrf_token:
            headers[CSRF_HEADER] = self._csrf_token

        try:
            response = self._client.request(method, f"{self._api_root}{path}", json=json, headers=headers)
        except httpx.HTTPError as e:
            raise RouterError(f"{method} {path} failed: {e}") from e

        refreshed = response.headers.get(UPDATED_CSRF_HEADER)
        if refreshed:
            self._csrf_token = refreshed
        return response

    def _ensure_session(self) -> None:
        with self._lock:
            if self._api_root is None:
                self._detect_api_style()
            if self._config.api_key or self._logged_in:
                return
            self._login()

    def _detect_api_style(self) -> None:
        try:
            response = self._client.get("/", follow_redirects=False)
        except httpx.HTTPError as e:
            raise RouterError(f"controller unreachable at {self._config.url}: {e}") from e

        if response.status_code == 200:
            self._api_root, self._login_path = UNIFI_OS_API_ROOT, UNIFI_OS_LOGIN_PATH
        elif response.is_redirect:
            if self._config.api_key:
                raise RouterError("API key authentication requires a UniFi OS controller")
            self._api_root, self._login_path = LEGACY_API_ROOT, LEGACY_LOGIN_PATH
        else:
            raise RouterError(f"unexpected HTTP {response.status_code} while detecting controller API style")

        logger.debug("Detected controller API style", extra={"api_root": self._api_root})

    def _login(self) -> None:
        try:
            response = self._client.post(
                self._login_path,
                json={"username": self._config.username, "password": self._config.password, "remember": True},
            )
        except httpx.HTTPError as e:
            raise RouterError(f"login failed: {e}") from e

        if response.status_code != 200:
            raise RouterError(f"login failed with HTTP {response.status_code}")

        self._csrf_token = response.headers.get(CSRF_HEADER) or response.headers.get(UPDATED_CSRF_HEADER)
        self._logged_in = True
        logger.info("Logged in to UniFi controller", extra={"url": self._config.url, "site": self._config.site})


def _parse_port(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _to_router_rule(item: dict[str, Any]) -> RouterRule | None:
    external_port = _parse_port(item.get("dst_port"))
    internal_port = _parse_port(item.get("fwd_port"))
    if external_port is None or internal_port is None or not item.get("_id"):
        return None
    return RouterRule(
        id=str(item["_id"]),
        name=item.get("name") or "",
        external_port=external_port,
        internal_port=internal_port,
        protocol=str(item.get("proto") or "tcp").lower(),
        destination_ip=item.get("fwd") or "",
        enabled=bool(item.get("enabled", True)),
        interface=item.get("pfwd_interface") or DEFAULT_INTERFACE,
        source=item.get("src") or ANY_SOURCE,
    )
