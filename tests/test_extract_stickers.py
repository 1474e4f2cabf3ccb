import threading

import pytest
from PIL import Image

import extract_stickers as extract_module
from conftest import make_sheet
from extract_stickers import (
    CONTENT_SIZE,
    STICKER_SIZE,
    ProcessedSticker,
    extract_stickers,
    extract_stickers_from_bytes,
    fit_within,
    normalize_region,
    save_stickers,
    sticker_filename,
)
from raster import RasterBuffer, Region, encode_png
from sticker_errors import DecodeFailure, PipelineCancelled


def test_grid_sheet_yields_six_normalized_stickers(grid_sheet):
    stickers = extract_stickers(grid_sheet)

    assert [s.id for s in stickers] == [f"sticker_{i}" for i in range(6)]
    for sticker in stickers:
        assert (sticker.buffer.width, sticker.buffer.height) == (STICKER_SIZE, STICKER_SIZE)
        assert sticker.buffer.alpha_at(0, 0) == 0
        assert sticker.buffer.alpha_at(STICKER_SIZE - 1, STICKER_SIZE - 1) == 0
        assert sticker.buffer.alpha_at(STICKER_SIZE // 2, STICKER_SIZE // 2) == 255


def test_expected_count_matching_projection(grid_sheet):
    assert len(extract_stickers(grid_sheet, expected_count=6)) == 6


def test_wide_region_is_scaled_and_centred():
    sheet = make_sheet(400, 200, [(50, 50, 350, 150)], fill=(40, 40, 40, 255))

    out = normalize_region(sheet, Region(50, 50, 300, 100))

    assert (out.width, out.height) == (STICKER_SIZE, STICKER_SIZE)
    assert out.to_image().getchannel("A").getbbox() == (10, 83, 230, 156)


@pytest.mark.parametrize(
    "size, fitted",
    [((300, 100), (220, 73)), ((100, 300), (73, 220)), ((50, 50), (220, 220)), ((440, 220), (220, 110))],
)
def test_fit_within(size, fitted):
    assert fit_within(*size) == fitted


def test_fit_within_never_exceeds_box():
    for w, h in [(1, 999), (999, 1), (221, 219), (7, 3)]:
        fw, fh = fit_within(w, h)
        assert 1 <= fw <= CONTENT_SIZE
        assert 1 <= fh <= CONTENT_SIZE


def test_blank_sheet_yields_no_stickers(capsys):
    assert extract_stickers(RasterBuffer.blank(300, 200, (255, 255, 255, 255))) == []
    assert "no sticker regions" in capsys.readouterr().err


def test_cancel_stops_extraction(grid_sheet):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PipelineCancelled):
        extract_stickers(grid_sheet, cancel=cancel)


def test_invalid_bytes_raise_decode_failure():
    with pytest.raises(DecodeFailure):
        extract_stickers_from_bytes(b"\x89PNG not really")


def test_extract_from_png_bytes(grid_sheet):
    stickers = extract_stickers_from_bytes(encode_png(grid_sheet), expected_count=6)
    assert len(stickers) == 6


def test_workers_produce_same_stickers(grid_sheet):
    serial = extract_stickers(grid_sheet, workers=1)
    parallel = extract_stickers(grid_sheet, workers=2)

    assert [s.id for s in parallel] == [s.id for s in serial]
    assert [bytes(s.buffer.data) for s in parallel] == [bytes(s.buffer.data) for s in serial]


def test_sticker_filename():
    assert sticker_filename("cat", "sticker_3") == "cat_sticker_3_240x240.png"


def test_save_stickers_writes_named_pngs(tmp_path):
    stickers = [
        ProcessedSticker("sticker_0", RasterBuffer.blank(STICKER_SIZE, STICKER_SIZE)),
        ProcessedSticker("sticker_2", RasterBuffer.blank(STICKER_SIZE, STICKER_SIZE, (1, 2, 3, 255))),
    ]

    saved = save_stickers(stickers, str(tmp_path / "out"), "pack")

    assert [p.rsplit("/", 1)[-1] for p in saved] == [
        "pack_sticker_0_240x240.png",
        "pack_sticker_2_240x240.png",
    ]
    with Image.open(saved[1]) as img:
        assert img.size == (STICKER_SIZE, STICKER_SIZE)
        assert img.convert("RGBA").getpixel((5, 5)) == (1, 2, 3, 255)


def test_failing_region_is_skipped_without_renumbering(grid_sheet, monkeypatch, capsys):
    expected = {s.id: bytes(s.buffer.data) for s in extract_stickers(grid_sheet)}
    real_normalize = extract_module.normalize_crop
    calls = []

    def flaky_normalize(crop, tolerance):
        calls.append(crop)
        if len(calls) == 2:
            raise RuntimeError("resample failed")
        return real_normalize(crop, tolerance)

    monkeypatch.setattr(extract_module, "normalize_crop", flaky_normalize)
    capsys.readouterr()

    stickers = extract_stickers(grid_sheet)

    assert [s.id for s in stickers] == ["sticker_0", "sticker_2", "sticker_3", "sticker_4", "sticker_5"]
    for sticker in stickers:
        assert bytes(sticker.buffer.data) == expected[sticker.id]
    assert "sticker_1: failed: resample failed" in capsys.readouterr().err
