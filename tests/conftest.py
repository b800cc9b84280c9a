"""
Pytest configuration for the MT940 parser tests.

Puts the repo root (parser module, CLI) and web/ (HTTP service) on the path
and provides sample statement messages.
"""

import os
import sys

import pytest

ROOT = os.path.join(os.path.dirname(__file__), '..')
for path in (ROOT, os.path.join(ROOT, 'web')):
    if path not in sys.path:
        sys.path.insert(0, path)


CRLF_MESSAGE = "\r\n".join([
    ":20:STARTUMSE",
    ":25:10020030/1234567890",
    ":28C:00001/001",
    ":60F:C160401EUR1234,56",
    ":61:1604010401DR637,39N033NONREF",
    ":86:177?00SEPA-UEBERWEISUNG?109310?20EREF+ABC123?21SVWZ+Miete April"
    "?22 Wohnung 3?3010020030?31DE12345678901234567890?32Max Mustermann?34997",
    ":61:1604040404CR100,00N051NONREF",
    ":86:166?00GUTSCHRIFT?20Rent payment May?32Erika Muster",
    ":62F:C160404EUR697,17",
    "-",
])

# Year-end statement with "@@" dividers followed by an earmarked block
# (no opening balance) that must be dropped.
AT_MESSAGE = "@@".join([
    "",
    ":20:STARTUMSE",
    ":25:10020030/1234567890",
    ":60F:D151231EUR50,00",
    ":61:1601021231D10,00NMSCNONREF",
    ":86:105?00LASTSCHRIFT?20Card fee",
    ":61:160105C25,00NTRFNONREF",
    ":86:166?00GUTSCHRIFT?20Refund",
    ":62F:D160105EUR35,00",
    ":20:VORMERKUNG",
    ":25:10020030/1234567890",
    ":61:1601080108D5,00NMSCNONREF",
    ":86:105?20Pending",
    "-",
])


@pytest.fixture
def crlf_message():
    return CRLF_MESSAGE


@pytest.fixture
def at_message():
    return AT_MESSAGE
