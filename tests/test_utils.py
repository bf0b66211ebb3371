import pytest

from evergreen_dealbot.errors import ConfigError
from evergreen_dealbot.utils import (
    car_file_name,
    fil_str,
    list_car_files,
    parse_fil,
    piece_cid_from_car_name,
    size_str,
)

PIECE_CID = "baga6ea4seaqaab6tksql2jqotldtr5zjjocnesygt725sals2ggge6ldmwmu2nq"


def test_car_file_name():
    assert car_file_name("/root/cars/", PIECE_CID) == f"/root/cars/{PIECE_CID}.car"
    assert car_file_name("/root/cars", PIECE_CID) == f"/root/cars/{PIECE_CID}.car"


def test_piece_cid_from_car_name():
    assert piece_cid_from_car_name(f"{PIECE_CID}.car") == PIECE_CID


def test_list_car_files_ignores_other_entries(tmp_path):
    (tmp_path / "b.car").write_bytes(b"")
    (tmp_path / "a.car").write_bytes(b"")
    (tmp_path / "notes.txt").write_text("")
    (tmp_path / "dir.car").mkdir()
    assert list_car_files(str(tmp_path)) == ["a.car", "b.car"]


def test_list_car_files_missing_directory(tmp_path):
    with pytest.raises(OSError):
        list_car_files(str(tmp_path / "missing"))


def test_parse_fil():
    assert parse_fil("0") == 0
    assert parse_fil("0.5") == 5 * 10**17
    assert parse_fil("2 FIL") == 2 * 10**18
    with pytest.raises(ConfigError):
        parse_fil("lots")
    with pytest.raises(ConfigError):
        parse_fil("-1")


def test_human_readable_amounts():
    assert fil_str(0) == "0 FIL"
    assert fil_str(5 * 10**17) == "0.5 FIL"
    assert fil_str(10 * 10**18) == "10 FIL"
    assert size_str(0) == "0 B"
    assert size_str(1386) == "1.35 KiB"
    assert size_str(34359738368) == "32 GiB"
