"""
RFC 8555 HTTP client used by the lifecycle nodes.

Nothing here remembers an account or an order between calls: the caller
passes the account key, the account URL and the current nonce, and gets the
server's answer plus the next nonce back.  All persistent ACME state lives in
the account/order documents that the graph reconciles with Key Vault.

Protocol details handled here:

* every read of an order, authorization or certificate is a POST-as-GET
  (signed, empty payload);
* a ``badNonce`` problem is retried with the nonce the error response
  carried, or a fresh one from ``newNonce``;
* order and authorization polling stop on the first terminal status.
"""
from __future__ import annotations

import base64
import logging
import time
from typing import TYPE_CHECKING, Callable, Optional

import requests
from josepy.jwk import JWKRSA

from acmeclient import jws as jwslib

if TYPE_CHECKING:
    from config import Settings

logger = logging.getLogger(__name__)

USER_AGENT = "keyvault-acme/1.0"
JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"
PROBLEM_PREFIX = "urn:ietf:params:acme:error:"

_NONCE_RETRIES = 3
_FAILED_AUTHZ_STATES = ("invalid", "deactivated", "expired", "revoked")


class AcmeError(Exception):
    """An ACME problem document (RFC 8555 §6.7), or a local protocol failure."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        super().__init__(f"ACME {status_code}: {self.problem_type} ({body.get('detail', body)})")

    @property
    def problem_type(self) -> str:
        problem = self.body.get("type", "unknown")
        return problem[len(PROBLEM_PREFIX):] if problem.startswith(PROBLEM_PREFIX) else problem

    @property
    def is_bad_nonce(self) -> bool:
        return self.problem_type == "badNonce"


class AcmeClient:
    """Talks to one ACME directory.  Verified against Pebble and LE staging."""

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._directory: Optional[dict] = None
        self._session = requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT

        if insecure:
            import urllib3

            # Pebble serves a self-signed certificate
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """Fetch the directory object once per client."""
        if self._directory is None:
            resp = self._session.get(self.directory_url, timeout=self.timeout)
            resp.raise_for_status()
            self._directory = resp.json()
            logger.debug("ACME directory %s loaded", self.directory_url)
        return self._directory

    def get_nonce(self, directory: dict) -> str:
        """HEAD newNonce and return the Replay-Nonce header."""
        resp = self._session.head(_endpoint(directory, "newNonce"), timeout=self.timeout)
        nonce = _replay_nonce(resp)
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "newNonce response has no Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWKRSA,
        contact: str,
        nonce: str,
        directory: dict,
        eab_key_id: str = "",
        eab_hmac_key: str = "",
    ) -> tuple[str, dict, str]:
        """
        Register *account_key* and agree to the terms of service.

        With EAB credentials the request carries an externalAccountBinding
        (ZeroSSL, Google Trust Services).

        Returns (account_url, account_body, new_nonce).
        """
        url = _endpoint(directory, "newAccount")
        payload: dict = {"termsOfServiceAgreed": True, **_contact_payload(contact, omit_empty=True)}
        if eab_key_id and eab_hmac_key:
            payload["externalAccountBinding"] = jwslib.create_eab_jws(account_key, eab_key_id, eab_hmac_key, url)

        resp = self._post_signed(payload, account_key, nonce, url, directory=directory)
        account_url = _location(resp, "newAccount")
        logger.info("ACME account registered at %s", account_url)
        return account_url, _json_or_empty(resp), _replay_nonce(resp)

    def update_account(
        self,
        account_key: JWKRSA,
        account_url: str,
        contact: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """Replace the contact list of an existing account (RFC 8555 §7.3.2)."""
        resp = self._post_signed(_contact_payload(contact), account_key, nonce, account_url, account_url)
        return _json_or_empty(resp), _replay_nonce(resp)

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: dict,
    ) -> tuple[dict, str, str]:
        """
        Place a newOrder for *domains*; wildcards are sent as-is.

        Returns (order_body, order_url, new_nonce).
        """
        identifiers = [{"type": "dns", "value": domain} for domain in domains]
        resp = self._post_signed(
            {"identifiers": identifiers},
            account_key,
            nonce,
            _endpoint(directory, "newOrder"),
            account_url,
            directory=directory,
        )
        return resp.json(), _location(resp, "newOrder"), _replay_nonce(resp)

    def get_order(self, order_url: str, account_key: JWKRSA, account_url: str) -> dict:
        return self._post_as_get(order_url, account_key, account_url).json()

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(self, auth_url: str, account_key: JWKRSA, account_url: str) -> dict:
        return self._post_as_get(auth_url, account_key, account_url).json()

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """Signal the CA that the challenge is ready to be validated (payload ``{}``)."""
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url)
        return resp.json(), _replay_nonce(resp)

    def poll_authorization(
        self,
        auth_url: str,
        account_key: JWKRSA,
        account_url: str,
        max_attempts: int = 30,
        poll_interval: float = 2.0,
    ) -> str:
        """
        Wait for an authorization to become valid.

        Raises AcmeError when it reaches a failed state or when
        *max_attempts* polls pass without a decision.
        """

        def failure(authz: dict) -> Optional[AcmeError]:
            status = authz.get("status")
            if status not in _FAILED_AUTHZ_STATES:
                return None
            return AcmeError(200, {
                "type": PROBLEM_PREFIX + "unauthorized",
                "detail": f"Authorization {status}: {_challenge_errors(authz)}",
            })

        authz = self._poll(
            lambda: self.get_authorization(auth_url, account_key, account_url),
            done=lambda body: body.get("status") == "valid",
            failure=failure,
            what=f"authorization {auth_url}",
            max_attempts=max_attempts,
            poll_interval=poll_interval,
        )
        return authz["status"]

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """Submit the DER CSR to the order's finalize URL."""
        csr = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed({"csr": csr}, account_key, nonce, finalize_url, account_url)
        return resp.json(), _replay_nonce(resp)

    def poll_order_for_certificate(
        self,
        order_url: str,
        account_key: JWKRSA,
        account_url: str,
        max_attempts: int = 30,
        poll_interval: float = 3.0,
    ) -> dict:
        """Wait until the order is valid and return its body (with ``certificate``)."""

        def failure(order: dict) -> Optional[AcmeError]:
            if order.get("status") == "invalid":
                return AcmeError(0, {"type": "invalid", "detail": f"Order became invalid: {order.get('error', order)}"})
            if order.get("status") == "valid" and not order.get("certificate"):
                return AcmeError(0, {"detail": "Order is valid but carries no certificate URL"})
            return None

        return self._poll(
            lambda: self.get_order(order_url, account_key, account_url),
            done=lambda body: body.get("status") == "valid" and bool(body.get("certificate")),
            failure=failure,
            what=f"order {order_url}",
            max_attempts=max_attempts,
            poll_interval=poll_interval,
        )

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[str, str]:
        """Fetch the PEM chain (leaf first); returns (full_chain_pem, new_nonce)."""
        resp = self._post_signed(None, account_key, nonce, cert_url, account_url, accept=PEM_CHAIN_CONTENT_TYPE)
        return resp.text, _replay_nonce(resp)

    # ── Internal ──────────────────────────────────────────────────────────

    def _poll(
        self,
        fetch: Callable[[], dict],
        done: Callable[[dict], bool],
        failure: Callable[[dict], Optional[AcmeError]],
        what: str,
        max_attempts: int,
        poll_interval: float,
    ) -> dict:
        for attempt in range(1, max_attempts + 1):
            body = fetch()
            error = failure(body)
            if error is not None:
                raise error
            if done(body):
                return body
            logger.debug("%s is %s (poll %d/%d)", what, body.get("status"), attempt, max_attempts)
            time.sleep(poll_interval)

        raise AcmeError(0, {"type": "timeout", "detail": f"No final status for {what} after {max_attempts} polls"})

    def _post_as_get(self, url: str, account_key: JWKRSA, account_url: str) -> requests.Response:
        directory = self.get_directory()
        return self._post_signed(None, account_key, self.get_nonce(directory), url, account_url, directory=directory)

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
        directory: dict | None = None,
    ) -> requests.Response:
        """POST a JWS-signed *payload* to *url*; a ``None`` payload is POST-as-GET."""
        for attempt in range(1, _NONCE_RETRIES + 1):
            resp = self._session.post(
                url,
                json=jwslib.sign_request(payload, account_key, nonce, url, account_url),
                headers={"Content-Type": JOSE_CONTENT_TYPE, "Accept": accept},
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            error = AcmeError(resp.status_code, _problem(resp), _replay_nonce(resp))
            if not error.is_bad_nonce or attempt == _NONCE_RETRIES:
                raise error
            logger.debug("badNonce from %s, retry %d/%d", url, attempt, _NONCE_RETRIES - 1)
            nonce = error.new_nonce or self.get_nonce(directory or self.get_directory())

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


def _endpoint(directory: dict, name: str) -> str:
    url = directory.get(name)
    if not url:
        raise AcmeError(0, {"detail": f"ACME directory has no {name!r} endpoint"})
    return url


def _location(resp: requests.Response, request: str) -> str:
    location = resp.headers.get("Location", "")
    if not location:
        raise AcmeError(resp.status_code, {"detail": f"{request} response has no Location header"})
    return location


def _replay_nonce(resp: requests.Response) -> str:
    return resp.headers.get("Replay-Nonce", "")


def _contact_payload(contact: str, omit_empty: bool = False) -> dict:
    if not contact:
        return {} if omit_empty else {"contact": []}
    return {"contact": [f"mailto:{contact}"]}


def _problem(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {"detail": resp.text}
    return body if isinstance(body, dict) else {"detail": str(body)}


def _json_or_empty(resp: requests.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _challenge_errors(authz: dict) -> str:
    errors = [c["error"].get("detail", str(c["error"])) for c in authz.get("challenges", []) if c.get("error")]
    return "; ".join(errors) or str(authz)


def make_client(settings: "Settings") -> AcmeClient:
    return AcmeClient(
        directory_url=settings.ACME_DIRECTORY_URL,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
