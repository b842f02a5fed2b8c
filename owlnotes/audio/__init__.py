from .mixdown import (  # noqa
    concat_tracks_pyav,
    detect_sample_rate_from_tracks,
    mixdown_tracks_pyav,
)
from .writer import AudioFileWriter  # noqa
