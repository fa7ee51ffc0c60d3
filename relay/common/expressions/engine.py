import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from relay.common.errors import ExpressionError, UnresolvedReferenceError

EXPRESSION_RE = re.compile(r"\$\{([^}]*)\}")
NAMESPACES = ("parameters", "outputs", "secrets", "event")
FALSY_STRINGS = {"", "false", "0", "no", "off"}

Reference = Tuple[str, Tuple[str, ...]]


@dataclass
class BindingContext:
    """
    Everything an expression may see when a step (or trigger binding) is resolved.
    `outputs` is keyed by step name, then output key.
    `event` is only populated while binding a trigger event to run parameters.
    """
    parameters: Dict[str, Any] = field(default_factory=dict)
    outputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    event: Optional[Dict[str, Any]] = None


def parse_reference(expr: str) -> Reference:
    """
    Splits `outputs.'build-image'.digest` into ("outputs", ("build-image", "digest")).
    Segments are dot separated and may be quoted with ' or ".
    """
    text = expr.strip()
    if not text:
        raise ExpressionError("Empty expression ${}")

    segments: List[str] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch in ("'", '"'):
            end = text.find(ch, i + 1)
            if end == -1:
                raise ExpressionError(f"Unterminated quote in '${{{expr}}}'")
            segments.append(text[i + 1:end])
            i = end + 1
        else:
            end = i
            while end < n and text[end] != ".":
                end += 1
            segment = text[i:end].strip()
            if not segment:
                raise ExpressionError(f"Empty path segment in '${{{expr}}}'")
            segments.append(segment)
            i = end

        if i < n:
            if text[i] != ".":
                raise ExpressionError(f"Expected '.' after quoted segment in '${{{expr}}}'")
            i += 1
            if i == n:
                raise ExpressionError(f"Trailing '.' in '${{{expr}}}'")

    namespace, path = segments[0], tuple(segments[1:])
    if namespace not in NAMESPACES:
        raise ExpressionError(f"Unknown namespace '{namespace}' in '${{{expr}}}'")
    if not path:
        raise ExpressionError(f"Namespace '{namespace}' requires a key in '${{{expr}}}'")
    if namespace == "outputs" and len(path) < 2:
        raise ExpressionError(f"Output references need a step and a key: '${{{expr}}}'")
    return namespace, path


def _lookup(reference: Reference, context: BindingContext) -> Any:
    namespace, path = reference
    current = getattr(context, namespace)
    if current is None:
        raise ExpressionError(f"Namespace '{namespace}' is not available here")

    for segment in path:
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise UnresolvedReferenceError(namespace, path)
    return current


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def resolve(value: Any, context: BindingContext) -> Any:
    """
    Evaluates every ${...} expression inside `value` against `context`.

    A string consisting of exactly one expression yields the referenced value with
    its type intact; strings that mix text and expressions yield a string.
    Dicts and lists are walked recursively, other scalars are returned as-is.
    """
    if isinstance(value, dict):
        return {k: resolve(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve(v, context) for v in value]
    if not isinstance(value, str):
        return value

    whole = EXPRESSION_RE.fullmatch(value)
    if whole:
        return _lookup(parse_reference(whole.group(1)), context)

    return EXPRESSION_RE.sub(
        lambda m: _stringify(_lookup(parse_reference(m.group(1)), context)),
        value,
    )


def references(value: Any) -> List[Reference]:
    found: List[Reference] = []
    if isinstance(value, dict):
        for v in value.values():
            found.extend(references(v))
    elif isinstance(value, list):
        for v in value:
            found.extend(references(v))
    elif isinstance(value, str):
        for match in EXPRESSION_RE.finditer(value):
            found.append(parse_reference(match.group(1)))
    return found


def referenced_steps(value: Any) -> Set[str]:
    return {path[0] for namespace, path in references(value) if namespace == "outputs"}


def referenced_secrets(value: Any) -> Set[str]:
    return {path[0] for namespace, path in references(value) if namespace == "secrets"}


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)
