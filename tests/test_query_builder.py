import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import qdrls  # noqa: E402


def test_selection_from_csv_preserves_order():
    link = qdrls.resolve_entity("link")
    selection = qdrls.build_attribute_selection("linkType,capacity", link)
    request = qdrls.build_request(link, selection)
    assert request.attribute_names == ("linkType", "capacity")
    assert request.operation == "QUERY"
    assert request.entity_type == "org.apache.qpid.dispatch.router.link"
    assert qdrls.render_header(list(request.attribute_names), selection) == "TYPE\tCPCTY"


def test_selection_resolves_aliases_to_canonical_names():
    link = qdrls.resolve_entity("link")
    selection = qdrls.build_attribute_selection("cpcty,id,type", link)
    assert [a.name for a in selection] == ["capacity", "identity", "linkType"]


def test_selection_allows_duplicates_and_unknown_names():
    link = qdrls.resolve_entity("link")
    selection = qdrls.build_attribute_selection("capacity,foo,capacity", link)
    assert selection == (
        qdrls.Attribute("capacity", "cpcty"),
        qdrls.Attribute("foo", ""),
        qdrls.Attribute("capacity", "cpcty"),
    )


def test_selection_defaults_when_unspecified():
    address = qdrls.resolve_entity("address")
    assert qdrls.build_attribute_selection("", address) == address.default_attributes
    assert qdrls.build_attribute_selection(None, address) == address.default_attributes


def test_selection_for_unknown_entity_passes_names_through():
    entity = qdrls.resolve_entity("connection")
    selection = qdrls.build_attribute_selection("host,role", entity)
    assert selection == (qdrls.Attribute("host", ""), qdrls.Attribute("role", ""))
    assert qdrls.build_attribute_selection("", entity) == ()


def test_selection_is_repeatable():
    link = qdrls.resolve_entity("link")
    first = qdrls.build_attribute_selection("identity,foo,rel", link)
    second = qdrls.build_attribute_selection("identity,foo,rel", link)
    assert first == second


def test_build_request_with_no_attributes():
    entity = qdrls.resolve_entity("connection")
    request = qdrls.build_request(entity, ())
    assert request.attribute_names == ()
    assert request.entity_type == "org.apache.qpid.dispatch.connection"


def test_to_message_shape():
    link = qdrls.resolve_entity("link")
    selection = qdrls.build_attribute_selection("identity,capacity", link)
    request = qdrls.build_request(link, selection)

    msg = qdrls.to_message(request, "amqp:/_topo/0/Router.A/temp.abc")
    assert msg.properties == {
        "operation": "QUERY",
        "entityType": "org.apache.qpid.dispatch.router.link",
    }
    assert msg.body == {"attributeNames": ["identity", "capacity"]}
    assert msg.reply_to == "amqp:/_topo/0/Router.A/temp.abc"
    assert msg.correlation_id == 1
