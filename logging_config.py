"""
Logging configuration for the compost lot chain service.

Structured JSON logs, plus an audit logger for chain events
(links written, validations, breaks and repairs).
"""

import json
import logging
import sys
import time
from typing import List, Optional


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class ChainAuditLogger:
    """
    Audit events for the integrity chain.

    Every write to a fingerprint goes through here, so the log alone
    is enough to reconstruct who sealed or re-sealed what and when.
    """

    def __init__(self, name: str = "compost_chain.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {"event_type": event_type, **kwargs}
        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def link_written(self, unit: str, lot_code: str, chain_index: int, fingerprint: str) -> None:
        self._log(
            logging.INFO,
            "LINK_WRITTEN",
            unit=unit,
            lot_code=lot_code,
            chain_index=chain_index,
            fingerprint=fingerprint,
            message=f"Lot {lot_code} sealed at index {chain_index}"
        )

    def finalization_failed(self, lot_code: str, reason: str, chain_index: Optional[int] = None) -> None:
        self._log(
            logging.ERROR,
            "FINALIZATION_FAILED",
            lot_code=lot_code,
            chain_index=chain_index,
            reason=reason,
            message=f"Finalization of {lot_code} failed: {reason}"
        )

    def chain_validated(self, unit: str, total_links: int) -> None:
        self._log(
            logging.INFO,
            "CHAIN_VALIDATED",
            unit=unit,
            total_links=total_links,
            message=f"Chain {unit} valid ({total_links} links)"
        )

    def chain_broken(self, unit: str, break_index: int, lot_code: str, reason: str) -> None:
        self._log(
            logging.WARNING,
            "CHAIN_BROKEN",
            unit=unit,
            break_index=break_index,
            lot_code=lot_code,
            reason=reason,
            message=f"Chain {unit} broken at index {break_index} ({reason})"
        )

    def chain_repaired(self, unit: str, from_index: int, updated: List[int]) -> None:
        self._log(
            logging.WARNING,
            "CHAIN_REPAIRED",
            unit=unit,
            from_index=from_index,
            updated_indices=updated,
            message=f"Chain {unit} re-sealed from index {from_index}, {len(updated)} links rewritten"
        )

    def repair_failed(self, unit: str, failed_index: int, updated: List[int], reason: str) -> None:
        self._log(
            logging.ERROR,
            "REPAIR_FAILED",
            unit=unit,
            failed_index=failed_index,
            updated_indices=updated,
            reason=reason,
            message=f"Repair of {unit} stopped at index {failed_index}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure root logging.

    Args:
        level: Log level name
        json_format: Use StructuredFormatter instead of plain text
        log_file: Optional extra file handler
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


audit_log = ChainAuditLogger()
