from .auto import get_transcriber  # noqa
from .base import Transcriber, Transcript  # noqa
