import pytest

from transitboard.routes import normalize_route


def test_agency_prefix_is_stripped():
    assert normalize_route("MTA NYCT_B41").canonical == "B41"
    assert normalize_route("MTABC_Q53").canonical == "Q53"
    assert normalize_route(" b41 ").canonical == "B41"


def test_select_bus_spellings_share_one_token():
    identity = normalize_route("B44-SBS")
    assert identity.canonical == "B44-SBS"
    for spelling in ("B44+", "B44 SBS", "MTA NYCT_B44+", "b44sbs"):
        assert identity.matches(spelling), spelling
    assert identity.line_ref == "MTA NYCT_B44+"
    assert not identity.matches("B44")


def test_diamond_express_matches_base_route():
    identity = normalize_route("6")
    assert identity.matches("6X")
    assert normalize_route("6X").canonical == "6"
    assert not identity.matches("5")


def test_line_ref_for_plain_bus_route():
    assert normalize_route("B49").line_ref == "MTA NYCT_B49"


def test_empty_route_rejected():
    with pytest.raises(ValueError):
        normalize_route("   ")


def test_matches_rejects_missing_values():
    identity = normalize_route("Q")
    assert not identity.matches(None)
    assert not identity.matches("")
    assert not identity.matches("QB")
