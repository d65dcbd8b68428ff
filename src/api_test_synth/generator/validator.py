"""Validates a rendered collection against the Postman v2.1 structure."""

import json

from api_test_synth.generator.collection import SCHEMA_URL

ALLOWED_METHODS = {"GET", "PUT", "POST", "PATCH", "DELETE", "COPY", "HEAD", "OPTIONS", "LINK", "UNLINK",
                   "PURGE", "LOCK", "UNLOCK", "PROPFIND", "VIEW"}
ALLOWED_LISTEN = {"test", "prerequest"}
ALLOWED_BODY_MODES = {"raw", "urlencoded", "formdata", "file", "graphql"}


def validate_info(collection: dict) -> dict[str, str]:
    """Check the info block.

    Returns dict of {location: error_message}.
    """
    errors = {}
    info = collection.get("info")
    if not isinstance(info, dict):
        return {"info": "missing info object"}
    if not isinstance(info.get("name"), str) or not info["name"]:
        errors["info.name"] = "name must be a non-empty string"
    if info.get("schema") != SCHEMA_URL:
        errors["info.schema"] = f"schema must be {SCHEMA_URL}"
    return errors


def validate_variables(collection: dict) -> dict[str, str]:
    errors = {}
    variables = collection.get("variable", [])
    if not isinstance(variables, list):
        return {"variable": "variable must be a list"}
    seen = set()
    for i, variable in enumerate(variables):
        location = f"variable[{i}]"
        if not isinstance(variable, dict) or not isinstance(variable.get("key"), str):
            errors[location] = "variable needs a string key"
            continue
        if variable["key"] in seen:
            errors[location] = f"duplicate variable '{variable['key']}'"
        seen.add(variable["key"])
    return errors


def _validate_request(request, location: str) -> dict[str, str]:
    errors = {}
    if not isinstance(request, dict):
        return {location: "request must be an object"}
    if request.get("method") not in ALLOWED_METHODS:
        errors[f"{location}.method"] = f"unsupported method {request.get('method')!r}"
    url = request.get("url")
    if not isinstance(url, dict) or not isinstance(url.get("raw"), str):
        errors[f"{location}.url"] = "url.raw is required"
    for j, header in enumerate(request.get("header", [])):
        if not isinstance(header, dict) or "key" not in header or "value" not in header:
            errors[f"{location}.header[{j}]"] = "header needs key and value"
    body = request.get("body")
    if body is not None and (not isinstance(body, dict) or body.get("mode") not in ALLOWED_BODY_MODES):
        errors[f"{location}.body"] = "body.mode is missing or unsupported"
    return errors


def _validate_events(events, location: str) -> dict[str, str]:
    errors = {}
    if not isinstance(events, list):
        return {location: "event must be a list"}
    for j, event in enumerate(events):
        where = f"{location}[{j}]"
        if not isinstance(event, dict) or event.get("listen") not in ALLOWED_LISTEN:
            errors[where] = "event.listen must be 'test' or 'prerequest'"
            continue
        script = event.get("script")
        if not isinstance(script, dict) or not isinstance(script.get("exec"), list):
            errors[f"{where}.script"] = "script.exec must be a list of lines"
    return errors


def validate_items(items, location: str = "item") -> dict[str, str]:
    """Recursively check folders (item) and requests (request)."""
    errors = {}
    if not isinstance(items, list):
        return {location: "item must be a list"}
    for i, item in enumerate(items):
        where = f"{location}[{i}]"
        if not isinstance(item, dict):
            errors[where] = "item must be an object"
            continue
        if not isinstance(item.get("name"), str):
            errors[f"{where}.name"] = "name must be a string"
        if "item" in item:
            errors.update(validate_items(item["item"], f"{where}.item"))
        elif "request" in item:
            errors.update(_validate_request(item["request"], f"{where}.request"))
        else:
            errors[where] = "item needs either 'item' or 'request'"
        if "event" in item:
            errors.update(_validate_events(item["event"], f"{where}.event"))
    return errors


def validate_collection(collection: dict) -> dict[str, str]:
    """Run all structural checks on a rendered collection.

    Returns dict of {location: error_message} for every problem found.
    """
    errors = {}
    errors.update(validate_info(collection))
    errors.update(validate_variables(collection))
    errors.update(validate_items(collection.get("item"), "item"))
    return errors


def validate_json(text: str) -> dict[str, str]:
    """Parse serialized collection text, then validate its structure."""
    try:
        collection = json.loads(text)
    except json.JSONDecodeError as e:
        return {"document": f"JSONDecodeError: {e.msg} (line {e.lineno})"}
    if not isinstance(collection, dict):
        return {"document": "collection must be a JSON object"}
    return validate_collection(collection)
