import io

import pytest
from PIL import Image

from animate_sticker import (
    FRAME_COUNT,
    FRAME_DELAY_MS,
    AnimationEffect,
    Transform,
    animate_sticker,
    apply_transform,
    effect_transform,
    synthesize_frames,
)
from image_utils import flatten_to_chroma_key

ANIMATED = [e for e in AnimationEffect if e != AnimationEffect.NONE]


def test_none_returns_input_bytes(sticker_png):
    assert animate_sticker(sticker_png, AnimationEffect.NONE) is sticker_png
    assert animate_sticker(sticker_png, "none") is sticker_png


@pytest.mark.parametrize("effect", ANIMATED)
def test_effects_produce_sixteen_frames(sticker_image, effect):
    frames = synthesize_frames(sticker_image, effect)

    assert len(frames) == FRAME_COUNT
    for frame in frames:
        assert frame.delay_ms == FRAME_DELAY_MS
        assert frame.image.size == (240, 240)
        assert frame.chroma_key == (0, 255, 0)


@pytest.mark.parametrize("effect", [AnimationEffect.SHAKE, AnimationEffect.PULSE,
                                    AnimationEffect.SPIN, AnimationEffect.WOBBLE])
def test_first_frame_is_untransformed(effect):
    assert effect_transform(effect, 0).is_identity


def test_bounce_first_frame_is_lowered():
    t = effect_transform(AnimationEffect.BOUNCE, 0)
    assert t.dy == 8
    assert t.dx == 0 and t.scale == 1 and t.angle == 0


def test_effect_formulas_at_quarter_turn():
    assert effect_transform(AnimationEffect.SHAKE, 4).dx == pytest.approx(-10)
    assert effect_transform(AnimationEffect.PULSE, 2).scale == pytest.approx(1.1)
    assert effect_transform(AnimationEffect.SPIN, 4).angle == pytest.approx(3.14159265 / 2)
    assert effect_transform(AnimationEffect.WOBBLE, 2).angle == pytest.approx(0.15)
    assert effect_transform(AnimationEffect.BOUNCE, 2).dy == pytest.approx(-7)


def test_none_effect_has_no_frames(sticker_image):
    with pytest.raises(ValueError):
        synthesize_frames(sticker_image, AnimationEffect.NONE)


def test_unknown_effect_rejected(sticker_png):
    with pytest.raises(ValueError):
        animate_sticker(sticker_png, "explode")


def test_frames_are_flattened_onto_key(sticker_image):
    frames = synthesize_frames(sticker_image, AnimationEffect.SHAKE)

    for frame in frames:
        assert frame.image.getchannel("A").getextrema() == (255, 255)
        assert frame.image.getpixel((0, 0)) == (0, 255, 0, 255)


def test_custom_chroma_key(sticker_image):
    frames = synthesize_frames(sticker_image, AnimationEffect.WOBBLE, chroma_key=(255, 0, 255))
    assert frames[3].image.getpixel((0, 0)) == (255, 0, 255, 255)
    assert frames[3].chroma_key == (255, 0, 255)


def test_spin_first_frame_matches_flattened_sticker(sticker_image):
    frames = synthesize_frames(sticker_image, AnimationEffect.SPIN)
    expected = flatten_to_chroma_key(sticker_image, (0, 255, 0))
    assert frames[0].image.tobytes() == expected.tobytes()


def test_translation_moves_content(sticker_image):
    moved = apply_transform(sticker_image, Transform(dx=10))
    assert moved.getchannel("A").getbbox() == (80, 70, 180, 170)


def test_shake_gif_decodes_with_transparency(sticker_png):
    data = animate_sticker(sticker_png, AnimationEffect.SHAKE)

    assert data.startswith(b"GIF89a")
    with Image.open(io.BytesIO(data)) as img:
        assert img.n_frames == FRAME_COUNT
        assert img.info["duration"] == FRAME_DELAY_MS
        assert img.info["loop"] == 0
        for i in range(FRAME_COUNT):
            img.seek(i)
            rgba = img.convert("RGBA")
            assert rgba.getpixel((0, 0))[3] == 0, f"frame {i}"
            assert rgba.getpixel((120, 120))[3] == 255, f"frame {i}"
