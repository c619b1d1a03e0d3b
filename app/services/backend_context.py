"""Derives the backend interface consumed by the frontend prompt.

Two paths produce the same normalized shape:

1. verified: an external verifier (e.g. a Candid compiler) returns the
   service description text, which is sanity-checked and parsed;
2. fallback: public functions are scraped from the Motoko source and a
   pseudo service description is built from them.
"""

import inspect
import logging
import re
from collections.abc import Awaitable
from collections.abc import Callable
from uuid import uuid4

from app.models.generation_models import ApiEndpoint
from app.models.generation_models import BackendContext
from app.models.generation_models import DataModel
from app.models.generation_models import DataModelField
from app.models.generation_models import MethodParameter
from app.models.generation_models import MethodSignature

logger = logging.getLogger(__name__)

__all__ = [
    "BackendContextExtractor",
    "InterfaceVerifier",
    "normalize_type",
]

InterfaceVerifier = Callable[[dict[str, str], str], "str | None | Awaitable[str | None]"]

_PUBLIC_FUNC = re.compile(
    r"public\s+(?:(shared\s*(?:\([^)]*\))?|query)\s+)?func\s+([a-zA-Z_][a-zA-Z0-9_]*)\s*\(([^)]*)\)"
    r"\s*(?::\s*(?:async\s+)?([^;{]+))?"
)
_CANDID_METHOD = re.compile(r"(\w+)\s*:\s*(\([^)]*\)\s*->\s*\([^)]*\))(\s*(?:composite_query|query|oneway))?")
_CANDID_METHOD_NAME = re.compile(r"(\w+)\s*:\s*\([^)]*\)\s*->\s*\([^)]*\)")
_EMPTY_SERVICE = re.compile(r"service\s*:\s*(?:\([^)]*\)\s*->\s*)?\{\s*\}")
_RECORD_TYPE = re.compile(r"type\s+(\w+)\s*=\s*\{([^}]+)\}")
_ALIAS_TYPE = re.compile(r"type\s+(\w+)\s*=\s*([^{;][^;]*);")
_FIELD = re.compile(r"(\w+)\s*:\s*([^;,\n]+)")

_PRIMITIVES = {
    "Text": "text",
    "Nat": "nat",
    "Nat8": "nat8",
    "Nat16": "nat16",
    "Nat32": "nat32",
    "Nat64": "nat64",
    "Int": "int",
    "Int8": "int8",
    "Int16": "int16",
    "Int32": "int32",
    "Int64": "int64",
    "Float": "float64",
    "Bool": "bool",
    "Principal": "principal",
    "Blob": "blob",
    "Null": "null",
}
_QUERY_PREFIXES = ("get", "list", "find")
_CANDID_QUERY_PREFIXES = ("get", "list", "find", "fetch", "read")


def _split_top_level(text: str, sep: str = ",") -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch in "<({[":
            depth += 1
        elif ch in ">)}]":
            depth -= 1
        if ch == sep and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return [p for p in parts if p]


def normalize_type(motoko_type: str) -> str:
    """Translate a Motoko type expression into the interface vocabulary."""
    t = motoko_type.strip()
    if not t:
        return t
    if t.startswith("?"):
        return f"opt {normalize_type(t[1:])}"
    if t.startswith("[") and t.endswith("]"):
        inner = t[1:-1].strip()
        if inner.startswith("var "):
            inner = inner[4:]
        return f"vec {normalize_type(inner)}"
    generic = re.fullmatch(r"(\w+)\s*<(.+)>", t)
    if generic:
        name, args = generic.group(1), _split_top_level(generic.group(2))
        if name == "Result" and len(args) == 2:
            return f"variant {{ ok: {normalize_type(args[0])}; err: {normalize_type(args[1])} }}"
        if name == "Option" and len(args) == 1:
            return f"opt {normalize_type(args[0])}"
        return t
    if t.startswith("(") and t.endswith(")"):
        inner = _split_top_level(t[1:-1])
        return "(" + ", ".join(normalize_type(part) for part in inner) + ")"
    return _PRIMITIVES.get(t, t)


def _is_query_name(name: str, prefixes: tuple[str, ...]) -> bool:
    return name.lower().startswith(prefixes)


def _format_signature(parameters: list[MethodParameter], return_type: str) -> str:
    params = ", ".join(f"{p.name}: {p.type}" for p in parameters)
    ret = "" if return_type in ("", "()") else return_type
    return f"({params}) -> ({ret})"


def _parameter_types_from_candid(arguments: str) -> list[str]:
    types = []
    for part in _split_top_level(arguments):
        name, sep, typ = part.partition(":")
        types.append((typ if sep else name).strip())
    return types


def extract_methods_from_source(source: str) -> list[MethodSignature]:
    methods: list[MethodSignature] = []
    for match in _PUBLIC_FUNC.finditer(source):
        modifier, name, raw_params, raw_return = match.groups()
        parameters = []
        for raw in _split_top_level(raw_params):
            param_name, sep, param_type = raw.partition(":")
            param_name = param_name.strip()
            # The caller context is implicit in the interface
            if not sep or param_name == "msg":
                continue
            parameters.append(MethodParameter(name=param_name, type=normalize_type(param_type)))
        return_type = normalize_type(raw_return or "()") or "()"
        declared_query = bool(modifier and modifier.strip() == "query")
        methods.append(
            MethodSignature(
                name=name,
                signature=_format_signature(parameters, return_type),
                parameters=parameters,
                parameter_types=[p.type for p in parameters],
                return_type=return_type,
                kind="query" if declared_query or _is_query_name(name, _QUERY_PREFIXES) else "update",
            )
        )
    return methods


def extract_methods_from_candid(candid_text: str) -> list[MethodSignature]:
    methods: list[MethodSignature] = []
    seen: set[str] = set()
    for match in _CANDID_METHOD.finditer(candid_text):
        name, signature, annotation = match.groups()
        if name in seen:
            continue
        seen.add(name)
        arguments, _, returns = signature.partition("->")
        declared_query = bool(annotation and "query" in annotation)
        methods.append(
            MethodSignature(
                name=name,
                signature=signature.strip(),
                parameter_types=_parameter_types_from_candid(arguments.strip()[1:-1]),
                return_type=returns.strip(),
                kind="query" if declared_query or _is_query_name(name, _CANDID_QUERY_PREFIXES) else "update",
            )
        )
    return methods


def _candid_method_names(candid_text: str) -> list[str]:
    names: list[str] = []
    for match in _CANDID_METHOD_NAME.finditer(candid_text):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def extract_data_models(source: str) -> list[DataModel]:
    models: list[DataModel] = []
    seen: set[str] = set()
    for match in _RECORD_TYPE.finditer(source):
        name, body = match.groups()
        if name in seen:
            continue
        seen.add(name)
        fields = [
            DataModelField(
                name=field_name,
                type=field_type.strip(),
                optional="?" in field_type or "Option" in field_type,
            )
            for field_name, field_type in _FIELD.findall(body)
        ]
        models.append(DataModel(name=name, definition=match.group(0), fields=fields))
    for match in _ALIAS_TYPE.finditer(source):
        name, target = match.groups()
        if name in seen:
            continue
        seen.add(name)
        models.append(DataModel(name=name, definition=f"type {name} = {target.strip()};"))
    return models


class BackendContextExtractor:
    """Builds a ``BackendContext`` from generated backend files."""

    def _check_interface(self, candid_text: str, request_id: str) -> list[MethodSignature] | None:
        text = candid_text.strip()
        if not text:
            logger.warning("[%s] Verified interface is empty, using source extraction", request_id)
            return None
        if not text.startswith("service") and "service :" not in text:
            logger.warning("[%s] Verified interface has no service declaration, using source extraction", request_id)
            return None
        if _EMPTY_SERVICE.search(text) and not re.search(r"service\s*:[^{]*\{[^}]+", text):
            logger.warning("[%s] Verified service is empty, using source extraction", request_id)
            return None

        methods = extract_methods_from_candid(text)
        names = _candid_method_names(text)
        if names and sorted(names) != sorted(m.name for m in methods):
            logger.warning("[%s] Method signature mismatch, re-parsing from interface text", request_id)
            methods = [
                MethodSignature(
                    name=name,
                    signature=signature.strip(),
                    kind="query" if _is_query_name(name, _CANDID_QUERY_PREFIXES) else "update",
                )
                for name, signature in re.findall(r"(\w+)\s*:\s*(\([^)]*\)\s*->\s*\([^)]*\))", text)
            ]
        return methods or None

    async def _verify(
        self,
        verifier: InterfaceVerifier,
        files: dict[str, str],
        project_name: str,
        request_id: str,
    ) -> str | None:
        try:
            result = verifier(files, project_name)
            if inspect.isawaitable(result):
                result = await result
        except Exception:
            logger.warning("[%s] Interface verification failed, using source extraction", request_id, exc_info=True)
            return None
        return result if isinstance(result, str) else None

    async def extract(
        self,
        backend_files: dict[str, str],
        project_name: str,
        verifier: InterfaceVerifier | None = None,
        request_id: str | None = None,
    ) -> BackendContext | None:
        """Return the backend interface, or None when no method could be found."""
        request_id = request_id or str(uuid4())
        source_files = {name: content for name, content in backend_files.items() if name.endswith(".mo")}
        if not source_files:
            logger.info("[%s] No backend source files to analyze", request_id)
            return None

        interface = ""
        methods: list[MethodSignature] = []
        verified = False
        if verifier is not None:
            candid_text = await self._verify(verifier, source_files, project_name, request_id)
            if candid_text is not None:
                checked = self._check_interface(candid_text, request_id)
                if checked:
                    interface, methods, verified = candid_text.strip(), checked, True
                    logger.info("[%s] Using verified interface with %d methods", request_id, len(methods))

        source = "\n".join(source_files.values())
        source_methods = extract_methods_from_source(source)
        if not verified:
            methods = source_methods
            if methods:
                body = "\n".join(f"  {m.name} : {m.signature};" for m in methods)
                interface = f"service : {{\n{body}\n}}"
                logger.info("[%s] Extracted %d methods from backend source", request_id, len(methods))

        if not methods:
            logger.info("[%s] No method signatures found in backend source", request_id)
            return None

        endpoints: list[ApiEndpoint] = []
        for method in source_methods or methods:
            if all(e.name != method.name for e in endpoints):
                endpoints.append(ApiEndpoint(name=method.name, full_signature=f"{method.name} : {method.signature}"))

        return BackendContext(
            source_files=list(source_files),
            interface_description=interface,
            method_signatures=methods,
            data_models=extract_data_models(source),
            api_endpoints=endpoints,
            verified=verified,
        )
