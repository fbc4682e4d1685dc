"""
Authenticated portal session.

Reproduces the portal's sign-in flow: fetch the sign-in page to capture its
hidden form state, post credentials together with that state, then reuse
the session cookies for card listing and the usage CSV export.

State machine:
    UNAUTHENTICATED -> TOKENS_CAPTURED -> AUTHENTICATED
SIGNED_OUT is only reached through an explicit ``sign_out()`` call.

A session issues strictly sequential requests and must not be shared
between threads without external locking.
"""

from datetime import datetime
from enum import Enum, auto
from typing import List, Optional, Tuple

import requests

from .decoder import decode_usage
from .errors import (
    AuthenticationError,
    InvalidCredentialsError,
    SessionStateError,
    TransportError,
)
from .form_state import (
    FormState,
    extract_form_state,
    extract_input_values,
    has_named_input,
)
from ..logging_setup import get_logger
from ..storage.models import UsageOptions, UsageRecord

ENDPOINT = "https://www.compasscard.ca"

SIGN_IN_PATH = "/SignIn"
MANAGE_CARDS_PATH = "/ManageCards"
USAGE_EXPORT_PATH = "/handlers/compasscardusagepdf.ashx"

SIGN_IN_BUTTON = "ctl00$Content$btnSignIn"
SIGN_OUT_TARGET = "ctl00$btnSignOut"
CARD_SERIAL_INPUT_ID = "Content_ManageCard_hfSerialNo"

# Usage report type code for the CSV/PDF export handler
USAGE_REPORT_TYPE = "2"

_logger = get_logger("compass_usage.core.session")


class SessionState(Enum):
    """Authentication progress of a portal session."""
    UNAUTHENTICATED = auto()
    TOKENS_CAPTURED = auto()
    AUTHENTICATED = auto()
    SIGNED_OUT = auto()


def format_usage_date(value: datetime) -> str:
    """Format a query bound as ``DD/MM/YYYY HH:MM:SS PM``.

    The export handler expects 24-hour digits followed by a meridiem.
    """
    meridiem = "PM" if value.hour >= 12 else "AM"
    return f"{value.strftime('%d/%m/%Y %H:%M:%S')} {meridiem}"


class CompassSession:
    """Cookie-bearing client for the Compass Card portal.

    Construction fetches the sign-in page and captures its form state;
    call ``login()`` before fetching cards or usage.
    """

    def __init__(
        self,
        base_url: str = ENDPOINT,
        http: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ):
        """Open a session and capture the sign-in form state.

        Args:
            base_url: Portal root URL
            http: HTTP client to use; a fresh ``requests.Session`` when omitted
            timeout: Per-request timeout in seconds (``None`` waits forever)

        Raises:
            TransportError: If the sign-in page cannot be fetched
        """
        self.base_url = base_url.rstrip("/")
        self.http = http if http is not None else requests.Session()
        self.timeout = timeout
        self.state = SessionState.UNAUTHENTICATED
        self.form_state = FormState()

        response = self._request("GET", SIGN_IN_PATH)
        self.form_state = extract_form_state(response.text)
        if not self.form_state.csrf_token:
            _logger.warning("session:sign_in_page_missing_csrf_token url=%s", response.url)
        self.state = SessionState.TOKENS_CAPTURED
        _logger.debug("session:tokens_captured base_url=%s", self.base_url)

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e
        return response

    def login(self, username: str, password: str) -> None:
        """Submit credentials with the captured form state.

        Raises:
            SessionStateError: If the session is not in TOKENS_CAPTURED
            TransportError: If the post fails
            InvalidCredentialsError: If the portal rejects the credentials
            AuthenticationError: If the sign-in page supplied no anti-forgery token
                and the portal refused the post
        """
        if self.state != SessionState.TOKENS_CAPTURED:
            raise SessionStateError(
                f"login requires TOKENS_CAPTURED, session is {self.state.name}",
                self.state,
            )

        form = {
            "__CSRFTOKEN": self.form_state.csrf_token,
            "__EVENTTARGET": "",
            "__EVENTARGUMENT": "",
            "ctl00$txtSignInEmail": "",
            "ctl00$txtSignInPassword": "",
            "ctl00$Content$passwordInfo$email": "",
            "__VIEWSTATE": self.form_state.view_state,
            "__VIEWSTATEGENERATOR": self.form_state.view_state_generator,
            "__EVENTVALIDATION": self.form_state.event_validation,
            SIGN_IN_BUTTON: "Sign in",
            "ctl00$Content$emailInfo$txtEmail": username,
            "ctl00$Content$passwordInfo$txtPassword": password,
        }
        response = self._request("POST", SIGN_IN_PATH, data=form)

        # A failed sign-in re-renders the sign-in form
        if has_named_input(response.text, SIGN_IN_BUTTON):
            if not self.form_state.csrf_token:
                raise AuthenticationError(
                    "sign-in rejected: the sign-in page did not provide an anti-forgery token"
                )
            raise InvalidCredentialsError("sign-in rejected: invalid username or password")

        self.state = SessionState.AUTHENTICATED
        _logger.info("session:authenticated base_url=%s", self.base_url)

    def cards(self) -> List[str]:
        """List the serial numbers of cards registered to the account.

        Serials are returned in page order; a card rendered twice is listed twice.
        """
        response = self._request("GET", MANAGE_CARDS_PATH)
        return extract_input_values(response.text, CARD_SERIAL_INPUT_ID)

    def usage(self, ccsn: str, options: UsageOptions) -> Tuple[List[UsageRecord], bytes]:
        """Fetch and decode the usage CSV for one card.

        Args:
            ccsn: Card serial number
            options: Inclusive date range

        Returns:
            Tuple of decoded records and the raw CSV bytes

        Raises:
            TransportError: If the export request fails
            FormatError: If the export cannot be decoded
        """
        params = {
            "type": USAGE_REPORT_TYPE,
            "start": format_usage_date(options.start_date),
            "end": format_usage_date(options.end_date),
            "ccsn": ccsn,
            "csv": "true",
        }
        response = self._request("GET", USAGE_EXPORT_PATH, params=params)
        raw = response.content
        records = decode_usage(raw)
        _logger.debug(
            "session:usage_fetched ccsn=%s start=%s end=%s records=%d",
            ccsn,
            params["start"],
            params["end"],
            len(records),
        )
        return records, raw

    def sign_out(self) -> None:
        """Post the sign-out event back to the card management page.

        Raises:
            TransportError: If the post fails
        """
        form = self.form_state.as_form_fields()
        form["__EVENTTARGET"] = SIGN_OUT_TARGET
        form["__EVENTARGUMENT"] = ""
        self._request("POST", MANAGE_CARDS_PATH, data=form)
        self.state = SessionState.SIGNED_OUT
        _logger.info("session:signed_out base_url=%s", self.base_url)


def open_session(
    username: str,
    password: str,
    base_url: str = ENDPOINT,
    http: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
) -> CompassSession:
    """Create a session and sign in.

    Raises:
        TransportError: On network or HTTP failure
        AuthenticationError: If the portal refuses the sign-in
    """
    session = CompassSession(base_url=base_url, http=http, timeout=timeout)
    session.login(username, password)
    return session
