"""Notification adapters."""

from labsieve.adapters.notify.email_notifier import SMTPNotifier, build_subject

__all__ = ["SMTPNotifier", "build_subject"]
