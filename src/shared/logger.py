"""Налаштування логування."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)-18s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Налаштовує стандартний логер з лаконічним форматом.

    Монітор працює в кількох потоках, тому ім'я потоку входить у формат.

    Args:
        level: Рівень логування (DEBUG, INFO, WARNING, ERROR).
        log_file: Якщо задано — записи дублюються у файл (append).
    """
    numeric = getattr(logging, level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=numeric,
        format=_FORMAT,
        datefmt="%H:%M:%S",
        handlers=handlers,
        force=True,
    )
