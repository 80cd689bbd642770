"""Output writers for transcription results.

Each writer renders a TranscriptionResult in one format (plain text,
WebVTT, SubRip or JSON) and writes it next to the audio file's name in an
output directory.
"""

import json
import logging
import os
from typing import Dict, Optional, TextIO, Type

from .data_models import TranscriptionResult

logger = logging.getLogger(__name__)


def format_timestamp(
    seconds: float, always_include_hours: bool = False, decimal_marker: str = "."
) -> str:
    """Render seconds as ``[HH:]MM:SS.mmm``.

    Hours are only shown when non-zero or when ``always_include_hours``.

    Example:
        >>> format_timestamp(3661.5, always_include_hours=True)
        '01:01:01.500'

    Raises:
        ValueError: If ``seconds`` is negative
    """
    if seconds < 0:
        raise ValueError(f"non-negative timestamp expected, got {seconds}")
    milliseconds = round(seconds * 1000.0)

    hours, milliseconds = divmod(milliseconds, 3_600_000)
    minutes, milliseconds = divmod(milliseconds, 60_000)
    secs, milliseconds = divmod(milliseconds, 1_000)

    hours_marker = f"{hours:02d}:" if always_include_hours or hours > 0 else ""
    return f"{hours_marker}{minutes:02d}:{secs:02d}{decimal_marker}{milliseconds:03d}"


class ResultWriter:
    """Base class of the output writers.

    Attributes:
        extension: File extension of the format
        output_dir: Directory the files are written to
    """

    extension: str = ""

    def __init__(self, output_dir: str):
        self.output_dir = output_dir

    def __call__(self, result: TranscriptionResult, audio_path: str) -> str:
        """Write ``result`` to ``<output_dir>/<audio stem>.<extension>``.

        Returns:
            Path of the written file
        """
        stem = os.path.splitext(os.path.basename(audio_path))[0]
        os.makedirs(self.output_dir, exist_ok=True)
        output_path = os.path.join(self.output_dir, f"{stem}.{self.extension}")
        with open(output_path, "w", encoding="utf-8") as f:
            self.write_result(result, f)
        logger.debug(f"Wrote {self.extension} transcript to '{output_path}'")
        return output_path

    def write_result(self, result: TranscriptionResult, file: TextIO) -> None:
        raise NotImplementedError


class WriteTXT(ResultWriter):
    extension = "txt"

    def write_result(self, result: TranscriptionResult, file: TextIO) -> None:
        for segment in result.segments:
            print(segment.text.strip(), file=file, flush=True)


class SubtitlesWriter(ResultWriter):
    always_include_hours: bool = False
    decimal_marker: str = "."

    def format_timestamp(self, seconds: float) -> str:
        return format_timestamp(
            seconds,
            always_include_hours=self.always_include_hours,
            decimal_marker=self.decimal_marker,
        )

    def iterate_result(self, result: TranscriptionResult):
        for segment in result.segments:
            yield (
                self.format_timestamp(segment.start),
                self.format_timestamp(segment.end),
                segment.text.strip().replace("-->", "->"),
            )


class WriteVTT(SubtitlesWriter):
    extension = "vtt"
    always_include_hours = False
    decimal_marker = "."

    def write_result(self, result: TranscriptionResult, file: TextIO) -> None:
        print("WEBVTT\n", file=file)
        for start, end, text in self.iterate_result(result):
            print(f"{start} --> {end}\n{text}\n", file=file, flush=True)


class WriteSRT(SubtitlesWriter):
    extension = "srt"
    always_include_hours = True
    decimal_marker = ","

    def write_result(self, result: TranscriptionResult, file: TextIO) -> None:
        for i, (start, end, text) in enumerate(self.iterate_result(result), start=1):
            print(f"{i}\n{start} --> {end}\n{text}\n", file=file, flush=True)


class WriteJSON(ResultWriter):
    extension = "json"

    def write_result(self, result: TranscriptionResult, file: TextIO) -> None:
        json.dump(result.to_dict(), file, ensure_ascii=False)


WRITERS: Dict[str, Type[ResultWriter]] = {
    "txt": WriteTXT,
    "vtt": WriteVTT,
    "srt": WriteSRT,
    "json": WriteJSON,
}


def get_writer(output_format: str, output_dir: Optional[str] = ".") -> ResultWriter:
    """Return the writer for ``output_format`` ("txt", "vtt", "srt" or "json").

    Raises:
        ValueError: If the format is not supported
    """
    writer_cls = WRITERS.get(output_format)
    if writer_cls is None:
        raise ValueError(
            f"output_format must be one of {sorted(WRITERS)}, got '{output_format}'"
        )
    return writer_cls(output_dir or ".")
