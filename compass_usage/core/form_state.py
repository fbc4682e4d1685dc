"""
Hidden form-state extraction.

The portal is an ASP.NET WebForms site: every postback must echo the
anti-forgery and view-state values rendered into hidden inputs of the
previous page.
"""

from dataclasses import dataclass
from typing import Dict, List

from bs4 import BeautifulSoup

CSRF_TOKEN_FIELD = "__CSRFTOKEN"
EVENT_VALIDATION_FIELD = "__EVENTVALIDATION"
VIEW_STATE_FIELD = "__VIEWSTATE"
VIEW_STATE_GENERATOR_FIELD = "__VIEWSTATEGENERATOR"

# Input name -> FormState attribute
_FIELD_ATTRS: Dict[str, str] = {
    CSRF_TOKEN_FIELD: "csrf_token",
    EVENT_VALIDATION_FIELD: "event_validation",
    VIEW_STATE_FIELD: "view_state",
    VIEW_STATE_GENERATOR_FIELD: "view_state_generator",
}


@dataclass(frozen=True)
class FormState:
    """Opaque tokens captured from one page fetch.

    All four values come from the same document; missing inputs leave
    the corresponding value empty.
    """
    csrf_token: str = ""
    event_validation: str = ""
    view_state: str = ""
    view_state_generator: str = ""

    def as_form_fields(self) -> Dict[str, str]:
        """Return the tokens keyed by the input names the portal expects."""
        return {
            CSRF_TOKEN_FIELD: self.csrf_token,
            VIEW_STATE_FIELD: self.view_state,
            VIEW_STATE_GENERATOR_FIELD: self.view_state_generator,
            EVENT_VALIDATION_FIELD: self.event_validation,
        }


def _parse(markup) -> BeautifulSoup:
    return BeautifulSoup(markup, "html.parser")


def extract_form_state(markup) -> FormState:
    """Extract the four hidden form-state values from an HTML document.

    Inputs are visited in document order, so when a name appears more than
    once the last value wins. An input with a matching name but no ``value``
    attribute does not overwrite an earlier match.

    Args:
        markup: HTML as ``str`` or ``bytes``

    Returns:
        FormState with every field found; absent fields are empty strings
    """
    values = {attr: "" for attr in _FIELD_ATTRS.values()}
    for node in _parse(markup).find_all("input"):
        attr = _FIELD_ATTRS.get(node.get("name"))
        if attr is None:
            continue
        value = node.get("value")
        if value is not None:
            values[attr] = value
    return FormState(**values)


def extract_input_values(markup, input_id: str) -> List[str]:
    """Return the ``value`` of every input whose ``id`` equals ``input_id``.

    Document order is preserved and duplicates are kept. Inputs without a
    ``value`` attribute are skipped.
    """
    return [
        node["value"]
        for node in _parse(markup).find_all("input", id=input_id)
        if node.get("value") is not None
    ]


def has_named_input(markup, name: str) -> bool:
    """Return True when the document contains an input with this ``name``."""
    return _parse(markup).find("input", attrs={"name": name}) is not None
