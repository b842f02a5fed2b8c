from .base import FileResult, Storage  # noqa
from owlnotes.settings import settings


def get_recordings_storage() -> Storage:
    """
    Get storage holding uploaded chunks and merged artifacts.
    """
    assert settings.STORAGE_BACKEND
    return Storage.get_instance(
        name=settings.STORAGE_BACKEND,
        settings_prefix="STORAGE_",
    )
