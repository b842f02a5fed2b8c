from .email import EmailNotifier  # noqa
