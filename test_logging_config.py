"""Logging configuration."""

from __future__ import annotations

from unittest import TestCase

from timeflow.logging_config import QUIET, build_config


class TestBuildConfig(TestCase):
    def test_console_only_without_file(self):
        conf = build_config("debug", "")
        self.assertEqual(list(conf["handlers"]), ["console"])
        self.assertEqual(conf["loggers"]["timeflow"]["level"], "DEBUG")

    def test_file_handler(self):
        conf = build_config("INFO", "/tmp/timeflow-test.log")
        self.assertEqual(conf["handlers"]["file"]["filename"], "/tmp/timeflow-test.log")
        for name in QUIET:
            self.assertEqual(conf["loggers"][name]["level"], "WARNING")
            self.assertEqual(conf["loggers"][name]["handlers"], ["console", "file"])
