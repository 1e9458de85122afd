from __future__ import annotations

import pytest

from timbersync.core.errors import ValidationFailure
from timbersync.services.datasets import parse_csv


def test_rows_keep_header_order_and_values() -> None:
    content = "species,dbh_cm,height_m\nPinus,32.5,18\nQuercus,41,22\n".encode("utf-8")
    rows = parse_csv(content)
    assert rows == [
        {"species": "Pinus", "dbh_cm": "32.5", "height_m": "18"},
        {"species": "Quercus", "dbh_cm": "41", "height_m": "22"},
    ]
    assert list(rows[0]) == ["species", "dbh_cm", "height_m"]


def test_byte_order_mark_is_ignored() -> None:
    rows = parse_csv(b"\xef\xbb\xbfplot,trees\nA1,12\n")
    assert rows == [{"plot": "A1", "trees": "12"}]


def test_short_and_long_rows_are_preserved() -> None:
    rows = parse_csv(b"a,b\n1\n2,3,4\n")
    assert rows[0] == {"a": "1", "b": None}
    assert rows[1] == {"a": "2", "b": "3", "_extra": ["4"]}


def test_non_utf8_content_is_rejected() -> None:
    with pytest.raises(ValidationFailure):
        parse_csv(b"species\n\xc9rable\n")


def test_empty_file_is_rejected() -> None:
    with pytest.raises(ValidationFailure):
        parse_csv(b"")
