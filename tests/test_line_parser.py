"""
Tests for quote-aware line tokenizing and streamed line splitting.
"""

from hirextra.domain.ingestion import line_parser
from hirextra.domain.ingestion.line_parser import (
    iter_logical_lines,
    iter_text_lines,
    parse_line,
)


class TestParseLine:
    def test_quoted_field_with_commas_and_escaped_quotes(self):
        fields = parse_line('Name,"Smith, John ""JJ""",Title')
        assert fields == ["Name", 'Smith, John "JJ"', "Title"]

    def test_fields_are_trimmed(self):
        assert parse_line("  a , b ,c  ") == ["a", "b", "c"]

    def test_empty_data_fields_are_preserved(self):
        assert parse_line("a,,c,") == ["a", "", "c", ""]

    def test_empty_header_fields_get_positional_names(self):
        assert parse_line("a,,c,", header=True) == ["a", "Column_2", "c", "Column_4"]

    def test_leading_bom_is_stripped(self):
        assert parse_line("\ufeffFull Name,Email", header=True) == ["Full Name", "Email"]

    def test_empty_line(self):
        assert parse_line("") == []

    def test_unterminated_quote_does_not_raise(self):
        assert parse_line('a,"b,c') == ["a", "b,c"]

    def test_quoted_whitespace_is_trimmed(self):
        assert parse_line('" padded ",x') == ["padded", "x"]


class TestIterTextLines:
    def test_splits_lf_and_crlf(self):
        chunks = [b"a,b\r\nc,", b"d\n", b"e"]
        assert list(iter_text_lines(chunks)) == ["a,b", "c,d", "e"]

    def test_trailing_newline_does_not_add_empty_line(self):
        assert list(iter_text_lines([b"a\nb\n"])) == ["a", "b"]

    def test_multibyte_character_split_across_chunks(self):
        assert list(iter_text_lines([b"caf\xc3", b"\xa9\nnext"])) == ["café", "next"]

    def test_undecodable_bytes_are_replaced(self):
        lines = list(iter_text_lines([b"ok\xff\n"]))
        assert lines == ["ok\ufffd"]

    def test_empty_chunks_are_ignored(self):
        assert list(iter_text_lines([b"", b"a", b"", b"\nb"])) == ["a", "b"]


class TestIterLogicalLines:
    def test_quoted_newline_is_kept_in_one_record(self):
        lines = ['a,"line one', 'line two",b', "c,d"]
        logical = list(iter_logical_lines(lines))
        assert logical == ['a,"line one\nline two",b', "c,d"]
        assert parse_line(logical[0]) == ["a", "line one\nline two", "b"]

    def test_lines_without_quotes_pass_through(self):
        assert list(iter_logical_lines(["a", "b"])) == ["a", "b"]

    def test_joining_is_bounded(self, monkeypatch):
        monkeypatch.setattr(line_parser, "MAX_LOGICAL_LINE_CHARS", 10)
        lines = ['"abc', "defghijk", "lmnop", "x"]
        assert list(iter_logical_lines(lines)) == ['"abc\ndefghijk', "lmnop", "x"]

    def test_unterminated_record_at_end_is_emitted(self):
        assert list(iter_logical_lines(['a,"open', "rest"])) == ['a,"open\nrest']
