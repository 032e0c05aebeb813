import logging

scan_logger = logging.getLogger("vulnscan_core.scan_events")


def log_scan(scan_id, event, **details):
    """Log a scan lifecycle event as a single key=value line."""
    extra = " ".join(f"{key}={value}" for key, value in details.items())
    scan_logger.info(f"[scan_id={scan_id}] {event}" + (f" {extra}" if extra else ""))
