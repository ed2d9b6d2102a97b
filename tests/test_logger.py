"""
Tests for logger setup and event descriptions.
"""

import logging

from conftest import T0
from points_engine.config import Config
from points_engine.data_models.events import ChainEvent
from points_engine.utils.logger import describe_event, setup_logger


def handler_types(logger):
    return [type(h) for h in logger.handlers]


class TestSetupLogger:

    def test_console_only_without_log_dir(self, monkeypatch):
        monkeypatch.setattr(Config, 'LOG_DIR', '')
        logger = setup_logger('points_engine.tests.console_only')

        assert handler_types(logger) == [logging.StreamHandler]

    def test_file_handler_under_log_dir(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Config, 'LOG_DIR', str(tmp_path / 'logs'))
        logger = setup_logger('points_engine.tests.with_file')
        try:
            assert logging.FileHandler in handler_types(logger)
            assert any(p.name.startswith('points_engine_') for p in (tmp_path / 'logs').iterdir())
        finally:
            for h in list(logger.handlers):
                h.close()
                logger.removeHandler(h)

    def test_repeated_setup_adds_no_handlers(self, monkeypatch):
        monkeypatch.setattr(Config, 'LOG_DIR', '')
        first = setup_logger('points_engine.tests.repeated')
        second = setup_logger('points_engine.tests.repeated')

        assert first is second
        assert len(second.handlers) == 1

    def test_level_override(self, monkeypatch):
        monkeypatch.setattr(Config, 'LOG_DIR', '')
        monkeypatch.setattr(Config, 'LOG_LEVEL', 'warning')
        logger = setup_logger('points_engine.tests.level')

        assert logger.handlers[0].level == logging.WARNING


def test_describe_event():
    event = ChainEvent(contract='Pool', event_name='ReserveDataUpdated', params={}, block_number=7,
                       block_timestamp=T0, tx_hash='0xabc', log_index=2)
    assert describe_event(event) == 'Pool.ReserveDataUpdated (block 7, tx 0xabc, log 2)'
