"""Translate caller job requests into the engine's wire request.

Options with one value are sent as a scalar, options with several values
as an item list. Stylesheet parameters travel inside one synthesized
option, "stylesheet-parameters", as a CSS-like literal:

    (page-width: 40, title: 'O\\27 Brien')

Boolean and integer parameters are unquoted; everything else is a single
quoted CSS string.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Optional

from pipelink.errors import UnknownScript
from pipelink.models import (
    Input,
    Item,
    JobRequest,
    Option,
    ScriptRef,
    StylesheetParameter,
    WireJobRequest,
)

if TYPE_CHECKING:
    from pipelink.api import EngineAPI

logger = logging.getLogger(__name__)

STYLESHEET_PARAMETERS_OPTION = "stylesheet-parameters"

# XML Schema datatypes written without quotes
UNQUOTED_TYPES = frozenset({"boolean", "integer", "nonNegativeInteger"})

# CSS string escapes: newline and single quote
_CSS_ESCAPES = str.maketrans({"\n": "\\A ", "'": "\\27 "})


def css_quote(value: str) -> str:
    """Single-quote a value as a CSS string."""
    return "'" + value.translate(_CSS_ESCAPES) + "'"


def _base_type(type_name: str) -> str:
    return type_name.split(":", 1)[1] if ":" in type_name else type_name


def format_stylesheet_parameters(params: Dict[str, StylesheetParameter]) -> str:
    """Serialize parameters as `(name: value, name2: 'value2')`."""
    parts = []
    for name, param in params.items():
        if _base_type(param.type) in UNQUOTED_TYPES:
            parts.append(f"{name}: {param.value}")
        else:
            parts.append(f"{name}: {css_quote(param.value)}")
    return "(" + ", ".join(parts) + ")"


def _option(name: str, values: List[str]) -> Option:
    if len(values) > 1:
        return Option(name=name, items=[Item(value=v) for v in values])
    return Option(name=name, value=values[0])


def merge_stylesheet_parameters(
    declared: Optional[Option],
    params: Dict[str, StylesheetParameter],
) -> Optional[Option]:
    """Combine a declared stylesheet-parameters option with typed parameters.

    The serialized parameters become one more item, so the result is always
    an item list; a declared scalar value is kept as the first item.
    """
    if not params:
        return declared

    value = format_stylesheet_parameters(params)
    items: List[Item] = []
    if declared is not None:
        items.extend(declared.items)
        if declared.value is not None:
            items.append(Item(value=declared.value))
    items.append(Item(value=value))
    return Option(name=STYLESHEET_PARAMETERS_OPTION, items=items)


async def marshal_job_request(request: JobRequest, api: "EngineAPI") -> WireJobRequest:
    """Build the engine's job request.

    Raises:
        UnknownScript: If the engine cannot resolve the script id
    """
    href = await api.script_url(request.script)
    if not href:
        raise UnknownScript(request.script)

    inputs = [
        Input(name=name, items=[Item(value=str(v)) for v in values])
        for name, values in request.inputs.items()
    ]

    options: List[Option] = []
    declared: Optional[Option] = None
    for name, values in request.options.items():
        if not values:
            logger.debug(f"Skipping option {name} without values")
            continue
        option = _option(name, values)
        if name == STYLESHEET_PARAMETERS_OPTION:
            declared = option
        else:
            options.append(option)

    stylesheet_option = merge_stylesheet_parameters(
        declared, request.stylesheet_parameters
    )
    if stylesheet_option is not None:
        options.append(stylesheet_option)

    return WireJobRequest(
        script=ScriptRef(href=href),
        nicename=request.nicename,
        priority=request.priority,
        inputs=inputs,
        options=options,
    )
