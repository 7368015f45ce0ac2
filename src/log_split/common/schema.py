# src/log_split/common/schema.py

from typing import Any, Dict, Optional

from jsonschema import ValidationError, validate


def validation_error(data: Any, schema: Dict[str, Any]) -> Optional[str]:
    """
    Validates a decoded JSON payload against a given JSON schema.

    Purpose:
        To make sure a routing directive found in the function's output
        matches the expected contract before the extension acts on it.
        Function code is free to print anything, so a payload that does not
        conform is an expected situation: it is reported to the caller, which
        decides how to log it, and never raises.

    Args:
        data (Any): The decoded JSON value.
        schema (Dict[str, Any]): The JSON schema to validate against.

    Returns:
        Optional[str]: None if the data is valid, otherwise a description of
                       the first violation, including its location.
    """
    try:
        validate(instance=data, schema=schema)
        return None
    except ValidationError as e:
        path = "/".join(str(part) for part in e.path)
        if path:
            return f"{e.message} (at '{path}', validator '{e.validator}')"
        return f"{e.message} (validator '{e.validator}')"
