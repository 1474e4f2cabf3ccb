"""Sample frames from a short video and convert them into a GIF sticker.

Frames are taken at 10 per second for at most 2.5 seconds and scaled to
cover a 240x240 white canvas (zoomed in by 20% to crop away borders). No
transparency is attempted for video frames.
"""

import argparse
import concurrent.futures
import math
import os
import sys
from pathlib import Path

# Allow importing sibling modules from the same scripts/ directory
sys.path.insert(0, os.path.dirname(__file__))

from make_gif import Frame, encode_gif
from sticker_errors import SeekTimeout, StickerError, VideoDecodeFailure

import cv2
from PIL import Image

SAMPLE_FPS = 10
MAX_DURATION = 2.5
COVER_ZOOM = 1.2
FRAME_SIZE = 240
SEEK_TIMEOUT = 5.0


def sample_times(
    duration: float | None,
    fps: int = SAMPLE_FPS,
    max_duration: float = MAX_DURATION,
) -> list[float]:
    """Timestamps (seconds) to sample; unknown or zero durations count as `max_duration`."""
    span = min(max_duration, duration or max_duration)
    total = math.floor(round(span * fps, 6))
    return [i / fps for i in range(total)]


def cover_frame(frame: Image.Image, size: int = FRAME_SIZE, zoom: float = COVER_ZOOM) -> Image.Image:
    """Scale `frame` to cover a size x size white canvas, centred and cropped."""
    vw, vh = frame.size
    scale = max(size / vw, size / vh) * zoom
    draw_w = max(1, round(vw * scale))
    draw_h = max(1, round(vh * scale))
    scaled = frame.convert("RGB").resize((draw_w, draw_h), Image.LANCZOS)

    canvas = Image.new("RGB", (size, size), (255, 255, 255))
    canvas.paste(scaled, ((size - draw_w) // 2, (size - draw_h) // 2))
    return canvas


class OpenCVVideoSource:
    """A video file opened with OpenCV, read by seeking to increasing timestamps.

    Each seek+read runs on one dedicated worker thread so the caller can bound
    the wait; the capture is never touched by two seeks at once. After a
    timeout the source is unusable and further seeks raise SeekTimeout.
    """

    def __init__(self, path: str, seek_timeout: float = SEEK_TIMEOUT):
        self.path = str(path)
        self.seek_timeout = seek_timeout
        self._capture = cv2.VideoCapture(self.path)
        if not self._capture.isOpened():
            self._capture.release()
            raise VideoDecodeFailure(f"Cannot open video: {self.path}")

        self.fps = self._capture.get(cv2.CAP_PROP_FPS)
        frame_count = int(self._capture.get(cv2.CAP_PROP_FRAME_COUNT))
        self.duration = frame_count / self.fps if self.fps > 0 and frame_count > 0 else None

        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="video-seek")
        self._last_timestamp: float | None = None
        self._timed_out = False
        self._closed = False

    def _seek_and_read(self, timestamp: float) -> Image.Image:
        if self.fps > 0:
            self._capture.set(cv2.CAP_PROP_POS_FRAMES, round(timestamp * self.fps))
        else:
            self._capture.set(cv2.CAP_PROP_POS_MSEC, timestamp * 1000)
        ok, frame = self._capture.read()
        if not ok or frame is None:
            raise VideoDecodeFailure(f"Could not read frame at {timestamp:.2f}s from {self.path}")
        return Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))

    def seek(self, timestamp: float) -> Image.Image:
        """Seek to `timestamp` seconds, wait for it to complete and return that frame.

        Raises:
            ValueError: `timestamp` is not after the previous one.
            SeekTimeout: the seek did not finish within `seek_timeout` seconds.
            VideoDecodeFailure: no frame could be read at `timestamp`.
        """
        if self._timed_out:
            raise SeekTimeout(f"{self.path}: source unusable after an earlier seek timeout")
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            raise ValueError(
                f"timestamps must increase: {timestamp:.2f}s after {self._last_timestamp:.2f}s"
            )

        future = self._executor.submit(self._seek_and_read, timestamp)
        try:
            image = future.result(timeout=self.seek_timeout)
        except concurrent.futures.TimeoutError:
            self._timed_out = True
            raise SeekTimeout(
                f"{self.path}: seek to {timestamp:.2f}s did not complete within {self.seek_timeout}s"
            ) from None
        self._last_timestamp = timestamp
        return image

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Release on the worker thread so it runs after any seek still in flight.
        self._executor.submit(self._capture.release)
        self._executor.shutdown(wait=not self._timed_out)

    def __enter__(self) -> "OpenCVVideoSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def sample_video(
    source,
    duration: float | None = None,
    size: int = FRAME_SIZE,
    fps: int = SAMPLE_FPS,
) -> list[Frame]:
    """Sample opaque frames from `source` in increasing timestamp order.

    Args:
        source: Object with a `duration` attribute (seconds or None) and a
                `seek(timestamp) -> PIL.Image` method, e.g. OpenCVVideoSource.
        duration: Overrides `source.duration` when given.
        size: Output canvas edge in pixels.
        fps: Samples per second; also sets the frame delay.
    """
    if duration is None:
        duration = source.duration
    delay_ms = round(1000 / fps)
    frames = []
    for timestamp in sample_times(duration, fps):
        frames.append(Frame(cover_frame(source.seek(timestamp), size), delay_ms))
    return frames


def video_to_gif(
    video_path: str,
    *,
    loop: int | None = 0,
    seek_timeout: float = SEEK_TIMEOUT,
    workers: int = 1,
) -> bytes:
    """Convert the first seconds of a video into an opaque 240x240 GIF."""
    with OpenCVVideoSource(video_path, seek_timeout) as source:
        print(
            f"Video: {video_path} (fps={source.fps:.2f}, "
            f"duration={'unknown' if source.duration is None else f'{source.duration:.2f}s'})",
            file=sys.stderr,
        )
        frames = sample_video(source)
    if not frames:
        raise VideoDecodeFailure(f"{video_path}: video is too short to sample")
    print(f"Sampled {len(frames)} frames", file=sys.stderr)
    return encode_gif(frames, loop=loop, workers=workers)


def main():
    parser = argparse.ArgumentParser(description="Convert a short video clip into a 240x240 GIF sticker.")
    parser.add_argument("video_path", help="Path to the video file (e.g. MP4).")
    parser.add_argument(
        "-o", "--output", default=None, help="Output GIF path (default: <video>.gif)."
    )
    parser.add_argument(
        "--loop", type=int, default=0,
        help="Loop count. 0 = infinite (default: 0). Negative = play once.",
    )
    parser.add_argument(
        "--seek-timeout",
        type=float,
        default=SEEK_TIMEOUT,
        dest="seek_timeout",
        help=f"Seconds to wait for each seek before giving up (default: {SEEK_TIMEOUT}).",
    )
    parser.add_argument("--workers", type=int, default=1, help="Worker processes for encoding (default: 1).")
    args = parser.parse_args()

    src = Path(args.video_path)
    out = Path(args.output) if args.output else src.with_suffix(".gif")

    try:
        data = video_to_gif(
            str(src),
            loop=args.loop if args.loop >= 0 else None,
            seek_timeout=args.seek_timeout,
            workers=args.workers,
        )
    except (StickerError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    print(f"Created GIF: {out} ({len(data) / 1024:.1f}KB)", file=sys.stderr)
    print(str(out))


if __name__ == "__main__":
    main()
