"""Background jobs."""

from .schedule_check import run_schedule_check, run_schedule_loop, send_alert

__all__ = ["run_schedule_check", "run_schedule_loop", "send_alert"]
