"""Exceptions raised by the sticker sheet pipeline.

Blank sheets and frames whose chroma key did not survive quantization are not
errors: they surface as an empty sticker list and an opaque frame.
"""


class StickerError(Exception):
    """Base class for all pipeline failures."""


class DecodeFailure(StickerError):
    """An image or video byte stream could not be decoded into pixels."""


class ImageTooLarge(DecodeFailure):
    """The decoded image exceeds the configured pixel bound."""


class VideoDecodeFailure(DecodeFailure):
    """A video could not be opened or a frame could not be read."""


class EncoderUnavailable(StickerError):
    """The indexed-colour quantizer needed by the GIF encoder is not usable."""


class SeekTimeout(StickerError):
    """A video seek did not complete within the allowed time."""


class PipelineCancelled(StickerError):
    """Processing was cancelled by the caller."""
