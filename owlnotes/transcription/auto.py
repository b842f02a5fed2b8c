import importlib

from owlnotes.settings import settings
from owlnotes.transcription.base import Transcriber

_registry = {}


def register(name: str, kclass: type[Transcriber]):
    _registry[name] = kclass


def get_transcriber(name: str | None = None, **kwargs) -> Transcriber:
    if name is None:
        name = settings.TRANSCRIPT_BACKEND
    if name not in _registry:
        module_name = f"owlnotes.transcription.transcriber_{name}"
        importlib.import_module(module_name)

    # gather specific configuration for the backend
    # search `TRANSCRIPT_BACKEND_XXX_YYY`, push to constructor as `backend_xxx_yyy`
    config = {}
    name_upper = name.upper()
    settings_prefix = "TRANSCRIPT_"
    config_prefix = f"{settings_prefix}{name_upper}_"
    for key, value in settings:
        if key.startswith(config_prefix):
            config_name = key[len(settings_prefix) :].lower()
            config[config_name] = value

    return _registry[name](**config | kwargs)
