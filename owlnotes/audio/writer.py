from pathlib import Path

import av

SUPPORTED_FORMATS = {
    ".mp3": ("mp3", "libmp3lame"),
    ".wav": ("wav", "pcm_s16le"),
}


class AudioFileWriter:
    """
    Write audio frames to a file.
    """

    def __init__(self, path: Path | str):
        if isinstance(path, str):
            path = Path(path)
        if path.suffix not in SUPPORTED_FORMATS:
            raise ValueError("Only mp3 and wav files are supported")
        self.path = path
        self.out_container = None
        self.out_stream = None
        self.samples = 0
        self.sample_rate = None

    @property
    def duration(self) -> float:
        """Seconds of audio pushed so far."""
        if not self.sample_rate:
            return 0.0
        return self.samples / self.sample_rate

    async def push(self, data: av.AudioFrame):
        if not self.out_container:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            container_format, codec = SUPPORTED_FORMATS[self.path.suffix]
            self.out_container = av.open(
                self.path.as_posix(), "w", format=container_format
            )
            self.out_stream = self.out_container.add_stream(
                codec, rate=data.sample_rate
            )
            self.sample_rate = data.sample_rate
        self.samples += data.samples
        for packet in self.out_stream.encode(data):
            self.out_container.mux(packet)

    async def flush(self):
        if self.out_container:
            for packet in self.out_stream.encode():
                self.out_container.mux(packet)
            self.out_container.close()
            self.out_container = None
            self.out_stream = None

    def close(self):
        """Release the container without flushing, used on failure paths."""
        if self.out_container:
            self.out_container.close()
            self.out_container = None
            self.out_stream = None
