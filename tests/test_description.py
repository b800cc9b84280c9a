"""
Tests for the :86: multi-purpose field and structured remittance decoding.
"""

from mt940_statement_parser import extract_structured_remittance, parse_description


def test_structured_tags():
    assert extract_structured_remittance(["EREF+ABC123", "MREF+XYZ987"]) == {
        "EREF": "ABC123",
        "MREF": "XYZ987",
    }


def test_unstructured_fallback():
    assert extract_structured_remittance(["Rent payment May"]) == {"SVWZ": "Rent payment May"}


def test_unstructured_lines_are_joined_without_separator():
    assert extract_structured_remittance(["Rent pay", "ment May"]) == {"SVWZ": "Rent payment May"}


def test_empty_lines_give_empty_svwz():
    assert extract_structured_remittance([]) == {"SVWZ": ""}


def test_short_first_line_is_unstructured():
    assert extract_structured_remittance(["AB+C", "EREF+X"]) == {"SVWZ": "AB+CEREF+X"}


def test_short_line_continuation_keeps_word_break():
    lines = ["SVWZ+Short", "continued"]
    assert extract_structured_remittance(lines) == {"SVWZ": "Short continued"}


def test_full_width_line_continues_without_space():
    # 27 characters: the word carries on into the next line
    first = "SVWZ+Rechnung 2016-04 Kunde"
    assert len(first) == 27
    assert extract_structured_remittance([first, "nnummer 12345"]) == {
        "SVWZ": "Rechnung 2016-04 Kundennummer 12345",
    }


def test_open_tag_vocabulary():
    lines = ["EREF+E2E-1", "KREF+K-2", "CRED+DE98ZZZ09999999999", "ABWA+Someone Else", "SVWZ+Text"]
    assert extract_structured_remittance(lines) == {
        "EREF": "E2E-1",
        "KREF": "K-2",
        "CRED": "DE98ZZZ09999999999",
        "ABWA": "Someone Else",
        "SVWZ": "Text",
    }


def test_parse_description_positions():
    descr = parse_description(
        "177?00SEPA-UEBERWEISUNG?109310?20EREF+ABC123?21SVWZ+Miete April"
        "?22 Wohnung 3?3010020030?31DE12345678901234567890?32Max Muster?33mann GmbH?34997"
    )
    assert descr.booking_code == "177"
    assert descr.booking_text == "SEPA-UEBERWEISUNG"
    assert descr.primanoten_nr == "9310"
    assert descr.bank_code == "10020030"
    assert descr.account_number == "DE12345678901234567890"
    assert descr.name == "Max Mustermann GmbH"
    assert descr.text_key_addition == "997"
    assert descr.lines == ["EREF+ABC123", "SVWZ+Miete April", "Wohnung 3"]
    assert descr.description_1 == "EREF+ABC123SVWZ+Miete April Wohnung 3"
    assert descr.description_2 == ""
    assert descr.structured == {"EREF": "ABC123", "SVWZ": "Miete April Wohnung 3"}


def test_parse_description_missing_slots_are_empty():
    descr = parse_description("166?20Hello")
    assert descr.booking_text == ""
    assert descr.primanoten_nr == ""
    assert descr.name == ""
    assert descr.bank_code == ""
    assert descr.structured == {"SVWZ": "Hello"}


def test_parse_description_normalizes_dividers_and_spaces():
    descr = parse_description(
        "166?00GUTSCHRIFT?20EREF+E2E-REF-0001\r\n?21SVWZ+Paid    twice@@?22 for 4711? 32Firma GmbH"
    )
    assert descr.lines == ["EREF+E2E-REF-0001", "SVWZ+Paid twice", "for 4711"]
    assert descr.structured == {"EREF": "E2E-REF-0001", "SVWZ": "Paid twice for 4711"}
    assert descr.name == "Firma GmbH"


def test_parse_description_marker_followed_by_line_break():
    # bare LF is not a line divider, so only the sub-field pattern can skip it
    descr = parse_description("166?\n20Split marker?\n\n32Firma GmbH")
    assert descr.lines == ["Split marker"]
    assert descr.name == "Firma GmbH"


def test_parse_description_description_2_is_untrimmed():
    descr = parse_description("166?20SVWZ+Invoice?60 extra text ?61more")
    assert descr.lines == ["SVWZ+Invoice", "extra text", "more"]
    assert descr.description_1 == "SVWZ+Invoice"
    assert descr.description_2 == " extra text more"
    assert descr.structured == {"SVWZ": "Invoice extra text more"}


def test_blank_remittance_segments_are_not_lines():
    descr = parse_description("166?20 ?21Text")
    assert descr.lines == ["Text"]
