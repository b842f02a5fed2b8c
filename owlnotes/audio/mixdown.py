"""
PyAV based assembly of audio inputs into a single output.

Two ways to combine inputs:
- concatenation: sequential chunks of one recording, played back to back
- mixdown: simultaneous tracks of one meeting, summed through an `amix` graph

Both resample every frame to the target rate as s32 stereo before handing
it to the writer, which re-encodes to the output codec.
"""

from fractions import Fraction
from pathlib import Path

import av
from av.audio.resampler import AudioResampler

from owlnotes.logger import logger as default_logger

TARGET_FORMAT = "s32"
TARGET_LAYOUT = "stereo"


def detect_sample_rate_from_tracks(
    track_paths: list[Path | str], logger=None
) -> int | None:
    """Sample rate of the first decodable audio frame, or None."""
    logger = logger or default_logger
    for path in track_paths:
        if not path:
            continue
        try:
            with av.open(str(path)) as container:
                for frame in container.decode(audio=0):
                    return frame.sample_rate
        except av.error.FFmpegError as e:
            logger.warning("Cannot probe sample rate", path=str(path), error=str(e))
            continue
    return None


def _retime(frame: av.AudioFrame, sample_rate: int, pts: int | None = None):
    frame.sample_rate = sample_rate
    frame.time_base = Fraction(1, sample_rate)
    if pts is not None:
        frame.pts = pts
    return frame


async def concat_tracks_pyav(
    track_paths: list[Path | str],
    writer,
    target_sample_rate: int,
    logger=None,
) -> None:
    """Join inputs back to back into `writer`, in the given order.

    Timestamps are rewritten so the output is gapless and monotonic,
    whatever the timestamps of each input were.
    """
    logger = logger or default_logger
    if not track_paths:
        raise ValueError("Concat failed: No input tracks")

    position = 0
    for idx, path in enumerate(track_paths):
        resampler = AudioResampler(
            format=TARGET_FORMAT, layout=TARGET_LAYOUT, rate=target_sample_rate
        )
        with av.open(str(path)) as container:
            if not container.streams.audio:
                raise ValueError(f"Concat failed: input {idx} has no audio stream")
            for frame in container.decode(audio=0):
                for rf in resampler.resample(frame) or []:
                    await writer.push(_retime(rf, target_sample_rate, position))
                    position += rf.samples
        for rf in resampler.resample(None) or []:
            await writer.push(_retime(rf, target_sample_rate, position))
            position += rf.samples
        logger.debug("Concat input appended", input=idx, position=position)


async def mixdown_tracks_pyav(
    track_paths: list[Path | str],
    writer,
    target_sample_rate: int,
    logger=None,
) -> None:
    """Multi-track mixdown using PyAV filter graph (amix).

    Builds a filter graph: N abuffer -> amix -> aformat -> sink. The mix
    lasts as long as the longest input; inputs that end early contribute
    silence from then on.
    """
    logger = logger or default_logger
    valid_paths = [path for path in track_paths if path]
    if not valid_paths:
        logger.error("Mixdown failed - no valid tracks provided")
        raise ValueError("Mixdown failed: No valid tracks")

    graph = av.filter.Graph()
    inputs = []
    for idx, _ in enumerate(valid_paths):
        args = (
            f"time_base=1/{target_sample_rate}:"
            f"sample_rate={target_sample_rate}:"
            f"sample_fmt={TARGET_FORMAT}:"
            f"channel_layout={TARGET_LAYOUT}"
        )
        inputs.append(graph.add("abuffer", args=args, name=f"in{idx}"))

    mixer = graph.add(
        "amix",
        args=(
            f"inputs={len(inputs)}:duration=longest:"
            "dropout_transition=2:normalize=0"
        ),
        name="mix",
    )
    fmt = graph.add(
        "aformat",
        args=(
            f"sample_fmts={TARGET_FORMAT}:channel_layouts={TARGET_LAYOUT}:"
            f"sample_rates={target_sample_rate}"
        ),
        name="fmt",
    )
    sink = graph.add("abuffersink", name="out")

    for idx, in_ctx in enumerate(inputs):
        in_ctx.link_to(mixer, 0, idx)
    mixer.link_to(fmt)
    fmt.link_to(sink)
    graph.configure()

    async def drain():
        while True:
            try:
                mixed = sink.pull()
            except (BlockingIOError, EOFError):
                break
            await writer.push(_retime(mixed, target_sample_rate))

    containers = []
    try:
        for path in valid_paths:
            containers.append(av.open(str(path)))

        decoders = [c.decode(audio=0) for c in containers]
        active = [True] * len(decoders)
        resamplers = [
            AudioResampler(
                format=TARGET_FORMAT, layout=TARGET_LAYOUT, rate=target_sample_rate
            )
            for _ in decoders
        ]

        while any(active):
            for i, (dec, is_active) in enumerate(zip(decoders, active)):
                if not is_active:
                    continue
                try:
                    frame = next(dec)
                except StopIteration:
                    active[i] = False
                    for rf in resamplers[i].resample(None) or []:
                        inputs[i].push(_retime(rf, target_sample_rate))
                    # end of stream for this input
                    inputs[i].push(None)
                    continue

                for rf in resamplers[i].resample(frame) or []:
                    inputs[i].push(_retime(rf, target_sample_rate))

                await drain()

        await drain()
    finally:
        for c in containers:
            c.close()
