"""Tests for the package logger set up on import."""

from __future__ import annotations

import logging

import goldshop_erp


def test_resolve_level_accepts_names_case_insensitively():
    assert goldshop_erp.resolve_level("debug") == logging.DEBUG
    assert goldshop_erp.resolve_level(" Warning ") == logging.WARNING


def test_resolve_level_falls_back_on_blank_or_unknown_names():
    assert goldshop_erp.resolve_level(None) == logging.INFO
    assert goldshop_erp.resolve_level("") == logging.INFO
    assert goldshop_erp.resolve_level("chatty", default=logging.ERROR) == logging.ERROR


def test_package_logger_sends_only_warnings_to_stderr():
    consoles = [
        handler
        for handler in goldshop_erp.log.handlers
        if type(handler) is logging.StreamHandler
    ]

    assert goldshop_erp.log.name == "goldshop_erp"
    assert len(consoles) == 1
    assert consoles[0].level == logging.WARNING
