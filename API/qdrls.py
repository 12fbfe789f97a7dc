#!/usr/bin/python3
"""
Helpers for querying a router's AMQP 1.0 management endpoint.

Everything except `ManagementClient` is a pure function over plain data:

    entity = resolve_entity("link")
    selection = build_attribute_selection("linkType,capacity", entity)
    request = build_request(entity, selection)
    with ManagementClient(url) as client:
        result = interpret_message(client.query(request))
    lines = align(render_lines(result, selection))
"""
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Sequence

from dotenv import load_dotenv
from proton import Message, ProtonException
from proton.utils import BlockingConnection
import tabulate as tabulate_lib
from tabulate import tabulate

_VERSION = 1.0

MANAGEMENT_NAMESPACE = "org.apache.qpid.dispatch"
MANAGEMENT_ADDRESS = "$management"
DEFAULT_URL = "amqp://localhost:5672"
DEFAULT_ENTITY_TYPE = "link"
QUERY_OPERATION = "QUERY"
STATUS_OK = 200
# One request per invocation.
CORRELATION_ID = 1
RECEIVER_CREDIT = 10
MAX_FRAME_SIZE = 4294967295

_ROUTER_ENTITY_TYPES = ("link", "address")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(level="WARNING", force=False):
    """
    Configure root logging for CLI use. `level` may be a name ("DEBUG") or a number.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise ValueError(f"unknown log level: {level!r}")
        level = resolved
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=force)
    logging.getLogger().setLevel(level)


@dataclass(frozen=True)
class Config:
    url: str = DEFAULT_URL
    username: str = ""
    password: str = field(default="", repr=False)


def load_config() -> Config:
    """
    Read connection defaults from the environment, loading a `.env` file first if one exists
    in the current directory or any parent. Already-set variables win over `.env` values.
    """
    load_dotenv(override=False)
    return Config(
        url=os.getenv("QDRLS_URL") or DEFAULT_URL,
        username=os.getenv("QDRLS_USERNAME") or "",
        password=os.getenv("QDRLS_PASSWORD") or "",
    )


# --- errors ---------------------------------------------------------------------------------


class QdrlsError(Exception):
    kind = "error"


class TransportError(QdrlsError):
    """Connection, link setup, send or receive failed. Always fatal."""

    kind = "transport"


class QueryError(QdrlsError):
    kind = "query"


class RequestFailed(QueryError):
    kind = "request_failed"

    def __init__(self, status_code, status_description=""):
        self.status_code = status_code
        self.status_description = "" if status_description is None else str(status_description)
        super().__init__(f"request failed ({status_code}): {self.status_description}")


class MalformedResponse(QueryError):
    kind = "malformed_response"

    def __init__(self, raw_payload, reason=""):
        self.raw_payload = raw_payload
        self.reason = reason
        msg = f"malformed response: {raw_payload!r}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


# --- attribute catalog ----------------------------------------------------------------------


@dataclass(frozen=True)
class Attribute:
    name: str
    alias: str = ""

    @property
    def display(self) -> str:
        return self.alias or self.name


@dataclass(frozen=True)
class EntityType:
    qualified_name: str
    short_alias: str
    default_attributes: tuple = ()


def _attrs(*pairs) -> tuple:
    return tuple(Attribute(name, alias) for name, alias in pairs)


_CATALOG = {
    "link": _attrs(
        ("linkType", "type"),
        ("linkDir", "dir"),
        ("connectionId", "conn"),
        ("identity", "id"),
        ("peer", ""),
        ("owningAddr", "addr"),
        ("capacity", "cpcty"),
        ("linkName", "name"),
        ("undeliveredCount", "undel"),
        ("unsettledCount", "unsett"),
        ("deliveryCount", "del"),
        ("acceptedCount", "acc"),
        ("releasedCount", "rel"),
        ("modifiedCount", "mod"),
        ("rejectedCount", "rej"),
        ("presettledCount", "presett"),
        ("droppedPresettledCount", "psdrop"),
    ),
    "address": _attrs(
        ("key", "addr"),
        ("distribution", "distrib"),
        ("priority", "pri"),
        ("subscriberCount", "local"),
        ("remoteCount", "remote"),
        ("deliveriesEgress", "out"),
        ("deliveriesIngress", "in"),
        ("deliveriesTransit", "thru"),
    ),
}


def lookup_defaults(entity_alias: str) -> tuple:
    return _CATALOG.get(entity_alias, ())


def resolve_attribute(name: str, catalog: Sequence[Attribute]) -> Attribute:
    """
    Match `name` against canonical names first, then aliases. Names the catalog does not know
    are passed through unchanged so servers exposing extra attributes can still be queried.
    """
    for attr in catalog:
        if attr.name == name:
            return attr
    for attr in catalog:
        if attr.alias and attr.alias == name:
            return attr
    return Attribute(name, "")


# --- entity resolver ------------------------------------------------------------------------


def namespace_qualify(name: str) -> str:
    if name in _ROUTER_ENTITY_TYPES:
        return f"{MANAGEMENT_NAMESPACE}.router.{name}"
    return f"{MANAGEMENT_NAMESPACE}.{name}"


_ENTITY_TYPES = tuple(
    EntityType(namespace_qualify(alias), alias, attrs) for alias, attrs in _CATALOG.items()
)


def resolve_entity(user_type_name: str) -> EntityType:
    for entity in _ENTITY_TYPES:
        if user_type_name in (entity.short_alias, entity.qualified_name):
            return entity
    return EntityType(namespace_qualify(user_type_name), user_type_name, ())


# --- query builder --------------------------------------------------------------------------


@dataclass(frozen=True)
class QueryRequest:
    entity_type: str
    attribute_names: tuple
    operation: str = QUERY_OPERATION
    correlation_id: Any = CORRELATION_ID


def build_attribute_selection(specified, entity: EntityType) -> tuple:
    if not specified:
        return tuple(entity.default_attributes)
    catalog = lookup_defaults(entity.short_alias)
    return tuple(resolve_attribute(token, catalog) for token in specified.split(","))


def build_request(entity: EntityType, selection: Sequence[Attribute]) -> QueryRequest:
    return QueryRequest(
        entity_type=entity.qualified_name,
        attribute_names=tuple(attr.name for attr in selection),
    )


def to_message(request: QueryRequest, reply_to: str) -> Message:
    return Message(
        body={"attributeNames": list(request.attribute_names)},
        properties={"operation": request.operation, "entityType": request.entity_type},
        reply_to=reply_to,
        correlation_id=request.correlation_id,
    )


# --- response interpreter -------------------------------------------------------------------


@dataclass(frozen=True)
class QueryResult:
    header: list
    rows: list


def _is_sequence(value) -> bool:
    return isinstance(value, (list, tuple))


def interpret_response(properties, body) -> QueryResult:
    """
    Decode a management reply into a `QueryResult`.

    Raises `RequestFailed` when `statusCode` is missing, non-integer or not 200, and
    `MalformedResponse` when a 200 reply's body lacks `attributeNames` (list of strings) or
    `results` (list of rows, each as long as `attributeNames`). Values are not coerced.
    """
    properties = properties or {}
    status = properties.get("statusCode")
    if isinstance(status, bool) or not isinstance(status, int) or status != STATUS_OK:
        raise RequestFailed(status, properties.get("statusDescription") or "")

    if not isinstance(body, dict):
        raise MalformedResponse(body, "body is not a map")
    names = body.get("attributeNames")
    results = body.get("results")
    if not _is_sequence(names) or not all(isinstance(n, str) for n in names):
        raise MalformedResponse(body, "attributeNames must be a list of strings")
    if not _is_sequence(results):
        raise MalformedResponse(body, "results must be a list")
    for i, row in enumerate(results):
        if not _is_sequence(row):
            raise MalformedResponse(body, f"result row {i} is not a list")
        if len(row) != len(names):
            raise MalformedResponse(
                body, f"result row {i} has {len(row)} values for {len(names)} attributes"
            )

    return QueryResult(header=[str(n) for n in names], rows=[list(r) for r in results])


def interpret_message(message) -> QueryResult:
    return interpret_response(getattr(message, "properties", None), getattr(message, "body", None))


# --- table renderer -------------------------------------------------------------------------


def stringify(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _display_name(name: str, selection: Sequence[Attribute]) -> str:
    for attr in selection:
        if attr.name == name:
            return attr.display
    return name


def render_header(names: Sequence[str], selection: Sequence[Attribute]) -> str:
    return "\t".join(_display_name(str(n), selection).upper() for n in names)


def render_divider(names: Sequence[str], selection: Sequence[Attribute]) -> str:
    return "\t".join("=" * len(_display_name(str(n), selection)) for n in names)


def render_row(values: Sequence[Any]) -> str:
    return "\t".join(stringify(v) for v in values)


def render_lines(result: QueryResult, selection: Sequence[Attribute], *, divider=False) -> list:
    lines = [render_header(result.header, selection)]
    if divider:
        lines.append(render_divider(result.header, selection))
    lines.extend(render_row(row) for row in result.rows)
    return lines


def align(lines: Sequence[str]) -> list:
    """
    Lay out tab-delimited lines as columns separated by at least two spaces.
    """
    if not lines:
        return []
    cells = [line.split("\t") for line in lines]
    # Cell values are shown as-is; tabulate strips them unless told otherwise.
    preserve = tabulate_lib.PRESERVE_WHITESPACE
    tabulate_lib.PRESERVE_WHITESPACE = True
    try:
        text = tabulate(
            cells,
            tablefmt="plain",
            disable_numparse=True,
            stralign="left",
            missingval="",
        )
    finally:
        tabulate_lib.PRESERVE_WHITESPACE = preserve
    return [line.rstrip() for line in text.split("\n")]


# --- transport ------------------------------------------------------------------------------


class ManagementClient:
    """
    One blocking AMQP 1.0 connection to a router, used for a single management request.

    Credentials: if both `username` and `password` are non-empty SASL PLAIN is offered,
    otherwise the connection is anonymous.
    """

    def __init__(self, url=DEFAULT_URL, username="", password="", timeout=None):
        self.url = url
        self._username = username or ""
        self._password = password or ""
        self._timeout = timeout
        self._conn = None
        self._receiver = None

    def _auth_kwargs(self) -> dict:
        if self._username and self._password:
            return {
                "allowed_mechs": "PLAIN",
                "allow_insecure_mechs": True,
                "user": self._username,
                "password": self._password,
            }
        return {"allowed_mechs": "ANONYMOUS"}

    def open(self):
        mech = "PLAIN" if self._username and self._password else "ANONYMOUS"
        logging.info(f"connecting to {self.url} (sasl={mech})")
        try:
            self._conn = BlockingConnection(
                self.url,
                timeout=self._timeout,
                max_frame_size=MAX_FRAME_SIZE,
                **self._auth_kwargs(),
            )
        except (ProtonException, OSError, ValueError) as e:
            # ValueError: unparseable url (bad port or service name).
            raise TransportError(f"Failed to connect to {self.url}: {e}") from e

        try:
            self._receiver = self._conn.create_receiver(None, dynamic=True, credit=RECEIVER_CREDIT)
        except (ProtonException, OSError) as e:
            self.close()
            raise TransportError(f"Failed to create receiver: {e}") from e
        logging.debug(f"reply address: {self.reply_to}")
        return self

    @property
    def reply_to(self) -> str:
        if self._receiver is None:
            return ""
        return self._receiver.link.remote_source.address

    def query(self, request: QueryRequest):
        """
        Send `request` to the management address and block for the single reply message.
        The reply is accepted before it is returned.
        """
        if self._conn is None:
            self.open()

        try:
            sender = self._conn.create_sender(MANAGEMENT_ADDRESS)
        except (ProtonException, OSError) as e:
            raise TransportError(f"Failed to create sender: {e}") from e

        msg = to_message(request, self.reply_to)
        logging.debug(
            f"sending {request.operation} entityType={request.entity_type} "
            f"attributeNames={list(request.attribute_names)}"
        )
        try:
            sender.send(msg)
        except (ProtonException, OSError) as e:
            raise TransportError(f"Could not send request: {e}") from e
        finally:
            try:
                sender.close()
            except (ProtonException, OSError) as e:
                logging.debug(f"sender close failed: {e}")

        try:
            response = self._receiver.receive()
            self._receiver.accept()
        except (ProtonException, OSError) as e:
            raise TransportError(f"Failed to receive response: {e}") from e

        logging.debug(f"received response properties={response.properties!r}")
        return response

    def close(self):
        receiver, conn = self._receiver, self._conn
        self._receiver = None
        self._conn = None
        for closeable in (receiver, conn):
            if closeable is None:
                continue
            try:
                closeable.close()
            except (ProtonException, OSError) as e:
                logging.debug(f"close failed: {e}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
