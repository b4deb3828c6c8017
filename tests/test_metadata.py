"""Tests for the JSON address metadata loader."""

import json

import pytest

from x86lift.errors import MetadataError
from x86lift.metadata import load_metadata, parse_addr, parse_addrs


def write_meta(directory, funcs, blocks, data):
    for name, values in (("funcs.json", funcs), ("blocks.json", blocks), ("data.json", data)):
        (directory / name).write_text(json.dumps(values))


def test_parse_addr_forms():
    assert parse_addr(0x401000) == 0x401000
    assert parse_addr("0x00401000") == 0x401000
    assert parse_addr("4198400") == 0x401000


@pytest.mark.parametrize("bad", [True, None, 1.5, "zzz", -1, [1]])
def test_parse_addr_rejects(bad):
    with pytest.raises(ValueError):
        parse_addr(bad)


def test_load_metadata(tmp_path):
    write_meta(tmp_path,
               ["0x401000"],
               ["0x401010", 4198400, "0x401010"],
               [])
    meta = load_metadata(tmp_path)
    assert meta.funcs == (0x401000,)
    assert meta.blocks == (0x401000, 0x401010)
    assert meta.data == ()


def test_invalid_json(tmp_path):
    path = tmp_path / "funcs.json"
    path.write_text("[0x401000")
    with pytest.raises(MetadataError) as exc:
        parse_addrs(path)
    assert "invalid JSON" in str(exc.value)
    assert exc.value.source == str(path)


def test_not_an_array(tmp_path):
    path = tmp_path / "blocks.json"
    path.write_text('{"a": 1}')
    with pytest.raises(MetadataError, match="expected a JSON array"):
        parse_addrs(path)


def test_bad_element_reports_index(tmp_path):
    path = tmp_path / "data.json"
    path.write_text('["0x10", "nope"]')
    with pytest.raises(MetadataError, match="element 1"):
        parse_addrs(path)


def test_missing_file(tmp_path):
    write_meta(tmp_path, [], [], [])
    (tmp_path / "data.json").unlink()
    with pytest.raises(MetadataError):
        load_metadata(tmp_path)
