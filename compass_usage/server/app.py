"""Flask application serving ``GET /<card>?year=YYYY&month=MM``."""

import re
from typing import Tuple

from flask import Flask, Response, jsonify, request

from ..core.errors import CompassError
from ..core.service import UsageService
from ..logging_setup import get_logger

_logger = get_logger("compass_usage.server.app")

_INT_RE = re.compile(r"[+-]?[0-9]+")


def _bad_request(message: str) -> Tuple[Response, int]:
    return Response(message, mimetype="text/plain"), 400


def _parse_int(name: str) -> int:
    raw = request.args.get(name, "")
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"invalid {name} {raw!r}: expected an integer")
    return int(raw)


def create_app(service: UsageService) -> Flask:
    """Build the usage app around a configured service."""
    app = Flask(__name__)
    app.config["USAGE_SERVICE"] = service

    @app.route("/<ccsn>", methods=["GET"])
    def usage(ccsn: str):
        """Monthly usage for one card as JSON."""
        try:
            year = _parse_int("year")
            month = _parse_int("month")
        except ValueError as e:
            return _bad_request(str(e))
        if month < 1 or month > 12:
            return _bad_request("month out of range [1, 12]")

        try:
            records = service.monthly_usage(ccsn, year, month)
        except (CompassError, ValueError) as e:
            _logger.warning("server:lookup_failed ccsn=%s year=%d month=%d error=%s", ccsn, year, month, e)
            return _bad_request(str(e))

        return jsonify({"Lines": [r.to_dict() for r in records], "CCSN": ccsn})

    return app
