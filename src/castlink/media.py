"""Local screen and system audio capture through ffmpeg.

ScreenCaptureProducer is the default LocalMediaProducer. It opens one
aiortc MediaPlayer for the screen and, when requested, one for system
audio. Audio is best effort: a cast without sound is still a cast.
"""

import logging
import os
import platform
from typing import Any, Callable

from aiortc.contrib.media import MediaPlayer

from castlink.errors import MediaError, NoDeviceError, PermissionDeniedError
from castlink.protocols import CaptureOptions, LocalMedia

logger = logging.getLogger(__name__)

PlayerFactory = Callable[..., Any]


def _video_source(system: str, options: CaptureOptions) -> tuple[str, str, dict[str, str]]:
    """Return (file, format, options) for the screen grabber of this OS."""
    cursor = "1" if options.show_cursor else "0"
    ffmpeg_options = {"framerate": str(options.framerate)}
    if options.video_size:
        ffmpeg_options["video_size"] = options.video_size

    if system == "Linux":
        ffmpeg_options["draw_mouse"] = cursor
        return os.environ.get("DISPLAY", ":0"), "x11grab", ffmpeg_options
    if system == "Darwin":
        ffmpeg_options["capture_cursor"] = cursor
        return "1:none", "avfoundation", ffmpeg_options
    if system == "Windows":
        ffmpeg_options["draw_mouse"] = cursor
        return "desktop", "gdigrab", ffmpeg_options
    raise NoDeviceError(f"Screen capture not supported on {system}")


def _audio_source(system: str, options: CaptureOptions) -> tuple[str, str, dict[str, str]] | None:
    ffmpeg_options = {
        "sample_rate": str(options.audio_sample_rate),
        "channels": str(options.audio_channels),
    }
    if system == "Linux":
        return "default", "pulse", ffmpeg_options
    if system == "Darwin":
        return "none:0", "avfoundation", ffmpeg_options
    return None


class ScreenCaptureProducer:
    """Capture the primary screen (and system audio) as aiortc tracks."""

    def __init__(
        self,
        player_factory: PlayerFactory | None = None,
        system: str | None = None,
    ):
        """Initialize producer.

        Args:
            player_factory: Creates MediaPlayer instances (for testing).
            system: platform.system() override (for testing).
        """
        self._player_factory = player_factory or MediaPlayer
        self._system = system or platform.system()

    def _open(self, source: tuple[str, str, dict[str, str]]) -> Any:
        file, fmt, options = source
        logger.debug(f"Opening capture {fmt}:{file} {options}")
        try:
            return self._player_factory(file, format=fmt, options=options)
        except PermissionError as e:
            raise PermissionDeniedError(f"Capture of {file} denied: {e}") from e
        except OSError as e:
            raise NoDeviceError(f"Cannot open {fmt} device {file}: {e}") from e

    async def get_local_media(self, options: CaptureOptions) -> LocalMedia:
        """Acquire screen and audio tracks.

        Raises:
            PermissionDeniedError: Capture refused.
            NoDeviceError: No screen to capture or nothing requested.
        """
        if not options.video and not options.audio:
            raise NoDeviceError("Nothing to capture, video and audio both disabled")

        media = LocalMedia()

        if options.video:
            player = self._open(_video_source(self._system, options))
            if player.video is None:
                if player.audio is not None:
                    player.audio.stop()
                raise NoDeviceError("Screen grabber produced no video track")
            media.tracks.append(player.video)

        if options.audio:
            source = _audio_source(self._system, options)
            if source is None:
                logger.warning(f"System audio capture not supported on {self._system}")
            else:
                try:
                    player = self._open(source)
                except MediaError as e:
                    logger.warning(f"No system audio captured: {e}")
                else:
                    if player.audio is not None:
                        media.tracks.append(player.audio)
                    else:
                        logger.warning("No system audio captured")

        if not media.tracks:
            raise NoDeviceError("No media tracks captured")

        kinds = ", ".join(getattr(t, "kind", "?") for t in media.tracks)
        logger.info(f"Captured tracks: {kinds}")
        return media
