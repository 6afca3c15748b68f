import pytest

from mpyfs.errors import ProtocolError
from mpyfs.protocol import (
    ListingRecord,
    checksum_script,
    delete_batch_command,
    format_record,
    normalize_remote_path,
    parse_checksum,
    parse_gone_paths,
    parse_listing,
    read_command,
    rename_script,
    run_script_code,
    tolerant_delete_script,
    write_command,
)


def test_parse_listing_reads_records_in_order():
    records = parse_listing("0&-1&/app\n32768&10&/app/main.py\n-1&-1&/lib\n")
    assert records == [
        ListingRecord(0, -1, "/app"),
        ListingRecord(32768, 10, "/app/main.py"),
        ListingRecord(-1, -1, "/lib"),
    ]


def test_directory_detection():
    assert ListingRecord(0x4000, 0, "/d").is_directory
    assert ListingRecord(0, -1, "/app").is_directory
    assert ListingRecord(-1, -1, "/lib").is_directory
    assert not ListingRecord(0x8000, 10, "/f.py").is_directory
    assert not ListingRecord(0x8000, -1, "/f.py").is_directory
    assert not ListingRecord(0, 0, "/empty.txt").is_directory


def test_parse_listing_skips_blank_lines_and_carriage_returns():
    records = parse_listing("\r\n32768&3&/a.txt\r\n\n")
    assert records == [ListingRecord(32768, 3, "/a.txt")]


def test_path_may_contain_ampersand():
    (record,) = parse_listing("32768&1&/odd&name.txt")
    assert record.path == "/odd&name.txt"
    assert format_record(record) == "32768&1&/odd&name.txt"


@pytest.mark.parametrize(
    "line",
    ["32768&10", "abc&10&/x", "32768&big&/x", "32768&10&relative/x"],
)
def test_parse_listing_rejects_malformed_lines(line):
    with pytest.raises(ProtocolError):
        parse_listing(line)


def test_segments_ignore_empty_parts():
    assert ListingRecord(0x8000, 1, "//app//main.py").segments == ["app", "main.py"]


def test_normalize_remote_path():
    assert normalize_remote_path("app/main.py") == "/app/main.py"
    assert normalize_remote_path("/app/") == "/app"
    assert normalize_remote_path("") == "/"


def test_copy_commands_use_colon_prefixed_remote_paths(tmp_path):
    local = tmp_path / "content"
    assert read_command("/app/main.py", local) == ["fs", "cp", ":/app/main.py", str(local).replace("\\", "/")]
    assert write_command(local, "app/main.py")[-1] == ":/app/main.py"


def test_delete_batch_is_one_chained_command():
    args = delete_batch_command([("/app/main.py", False), ("/app", True)])
    assert args == ["fs", "rm", ":/app/main.py", "+", "fs", "rmdir", ":/app"]


def test_tolerant_delete_script_keeps_order_and_reports_gone_paths():
    script = tolerant_delete_script([("/app/main.py", False), ("/app", True)])
    assert script.index("'/app/main.py'") < script.index("'/app'),")
    assert "(os.remove, '/app/main.py')" in script
    assert "(os.rmdir, '/app')" in script
    compile(script, "<board>", "exec")


def test_parse_gone_paths():
    assert parse_gone_paths("gone:/a\nnoise\ngone:/b/c\n") == ["/a", "/b/c"]


def test_rename_script_quotes_paths():
    script = rename_script("/a b", "/it's")
    assert "os.rename('/a b', \"/it's\")" in script
    compile(script, "<board>", "exec")


def test_run_script_code_reads_normalized_path():
    code = run_script_code("lib//app.py")
    assert code == "exec(open('/lib/app.py').read())\n"
    compile(code, "<board>", "exec")


def test_checksum_script_compiles():
    compile(checksum_script("/main.py"), "<board>", "exec")


def test_parse_checksum():
    digest = "ab" * 32
    assert parse_checksum(f"sha256:{digest}\r\n") == digest
    assert parse_checksum("sha256:-\n") is None
    with pytest.raises(ProtocolError):
        parse_checksum("Traceback (most recent call last):")
