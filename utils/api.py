"""Request parsing, response envelopes, and service lookup shared by the API blueprints."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import current_app, jsonify, request
from flask_wtf import FlaskForm

from utils.errors import ValidationFailed, form_errors


class JSONForm(FlaskForm):
    """FlaskForm fed from the JSON request body; bearer-token clients carry no CSRF token."""

    class Meta:
        csrf = False

    def validate_or_raise(self) -> "JSONForm":
        if not self.validate():
            raise ValidationFailed("Validation failed", details=form_errors(self))
        return self


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed("Request body must be a JSON object")
    return data


def parse_datetime(value, field: str, required: bool = False) -> Optional[datetime]:
    """Parse an ISO-8601 string into a naive UTC datetime."""
    if value in (None, ""):
        if required:
            raise ValidationFailed(f"{field} is required")
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationFailed(f"{field} must be an ISO-8601 date") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def arg_bool(name: str) -> Optional[bool]:
    value = request.args.get(name)
    if value is None:
        return None
    return value.strip().lower() in ("1", "true", "yes")


def success(data: Any = None, message: Optional[str] = None, status: int = 200, **extra):
    payload: Dict[str, Any] = {"success": True}
    if message:
        payload["message"] = message
    if data is not None:
        payload["data"] = data
    payload.update(extra)
    return jsonify(payload), status


def paginate(query, serializer, default_limit: int = 10, max_limit: int = 100):
    """Paginate a query from ``page``/``limit`` args into ``(items, pagination)``."""
    try:
        page = max(int(request.args.get("page", 1)), 1)
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except ValueError as exc:
        raise ValidationFailed("page and limit must be integers") from exc
    result = query.paginate(page=page, per_page=limit, error_out=False)
    return [serializer(item) for item in result.items], {
        "current": page,
        "pages": result.pages,
        "total": result.total,
        "limit": limit,
    }


def service(name: str):
    """Look up one of the process-wide services registered on the app."""
    try:
        return current_app.extensions[name]
    except KeyError as exc:
        raise RuntimeError(f"Service not initialized: {name}") from exc
