"""
Tests for the parse_cli command line wrapper.
"""

import json

import parse_cli


def test_cli_prints_json(tmp_path, capsys, crlf_message):
    src = tmp_path / "statement.sta"
    src.write_bytes(crlf_message.encode("latin-1"))

    assert parse_cli.main([str(src)]) == 0

    out = json.loads(capsys.readouterr().out)
    assert len(out) == 1
    assert out[0]["start_balance"]["amount"] == "1234.56"
    assert [tx["amount"] for tx in out[0]["transactions"]] == ["637.39", "100.00"]


def test_cli_writes_output_file(tmp_path, at_message):
    src = tmp_path / "statement.mt940"
    src.write_bytes(at_message.encode("latin-1"))
    dest = tmp_path / "out.json"

    assert parse_cli.main([str(src), "-o", str(dest)]) == 0

    out = json.loads(dest.read_text(encoding="utf-8"))
    assert out[0]["transactions"][0]["booking_date"] == "2015-12-31"


def test_cli_reports_parse_error(tmp_path, capsys):
    src = tmp_path / "broken.sta"
    src.write_bytes(b":20:X\r\n:60F:C160401EUR10,00\r\n:61:160401X5,00NTRF\r\n:86:166?20x")

    assert parse_cli.main([str(src)]) == 1
    assert "c/d/rc/rd mark not found" in capsys.readouterr().err


def test_cli_missing_file(tmp_path, capsys):
    assert parse_cli.main([str(tmp_path / "missing.sta")]) == 2
    assert "cannot read" in capsys.readouterr().err
