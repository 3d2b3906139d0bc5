"""
Unit Tests for the Command Line Commands

Test Coverage:
    - Argument parsing, settings overrides and usage errors
    - validate: per-service Valid/Invalid report and exit status
    - list: resolved facts with global fallback, invalid service hint
    - status: status file contents and missing file message
    - dispatch and the main entry point exit codes
"""

import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr
from unittest.mock import patch

from . import __main__ as entry
from .commands import (
    Announce,
    List,
    Status,
    Validate,
    dispatch,
    parse_args,
    run_list,
    run_status,
    run_validate,
)
from .config import Settings
from .logging_setup import setup_logger


class CommandTestCase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmpdir.name, 'healthcheck.conf')
        self.settings = Settings(config_file=self.config_path, health_dir=self.tmpdir.name, interactive=True)
        self.out = io.StringIO()
        logfile = os.path.join(self.tmpdir.name, 'healthcheck.log')
        self.write_config(
            "[global]\n"
            "interval = 5\n"
            "timeout = 2\n"
            "rise = 3\n"
            "fall = 2\n"
            "metric = 100\n"
            f"logfile = {logfile}\n"
            "logcheck = no\n"
            "debug = no\n"
            f"disable = {self.tmpdir.name}/disable\n"
            "\n"
            "[web]\n"
            "command = curl -fsS http://127.0.0.1/health\n"
            "nexthop = 192.0.2.1\n"
            "ip = 198.51.100.10\n"
            "ip = 198.51.100.11/32\n"
            "metric = 50\n"
            "\n"
            "[broken]\n"
            "command = true\n"
            "nexthop = 192.0.2.1\n"
            "ip = 2001:db8::1\n"
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    def write_config(self, text):
        with open(self.config_path, 'w') as f:
            f.write(text)


class TestParseArgs(CommandTestCase):

    def test_defaults_to_list(self):
        command, _ = parse_args([], settings=self.settings)
        self.assertEqual(command, List(None))

    def test_commands(self):
        test_cases = [
            (['-c', 'announce', '-n', 'web'], Announce('web')),
            (['-c', 'validate'], Validate(None)),
            (['-c', 'validate', '-n', 'web'], Validate('web')),
            (['--command', 'status', '--name', 'dns'], Status('dns')),
            (['-c', 'list', '-n', 'web'], List('web')),
        ]
        for argv, expected in test_cases:
            with self.subTest(argv=argv):
                command, _ = parse_args(argv, settings=self.settings)
                self.assertEqual(command, expected)

    def test_overrides(self):
        _, settings = parse_args(['-f', '/tmp/other.conf', '-d', '/tmp/health'], settings=self.settings)
        self.assertEqual(settings.config_file, '/tmp/other.conf')
        self.assertEqual(settings.health_dir, '/tmp/health')

    def test_announce_requires_name(self):
        with redirect_stderr(io.StringIO()) as err:
            with self.assertRaises(SystemExit) as cm:
                parse_args(['-c', 'announce'], settings=self.settings)
        self.assertEqual(cm.exception.code, 2)
        self.assertIn('No check name was specified', err.getvalue())

    def test_unknown_command(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                parse_args(['-c', 'restart'], settings=self.settings)
        self.assertEqual(cm.exception.code, 2)


class TestValidate(CommandTestCase):

    def test_valid_service(self):
        self.assertEqual(run_validate(self.settings, 'web', self.out), 0)
        self.assertEqual(self.out.getvalue(), "Validating configuration for check web: Valid\n")

    def test_all_services(self):
        self.assertEqual(run_validate(self.settings, None, self.out), 1)
        lines = self.out.getvalue().splitlines()
        self.assertEqual(lines[0], "Validating configuration for check web: Valid")
        self.assertEqual(lines[1], "Validating configuration for check broken: Invalid")
        self.assertIn("  - IP address 2001:db8::1 is not a valid IPv4 address", lines)

    def test_unknown_service(self):
        self.assertEqual(run_validate(self.settings, 'mail', self.out), 1)
        self.assertIn("No configuration for the mail section", self.out.getvalue())

    def test_missing_config_file(self):
        os.unlink(self.config_path)
        self.assertEqual(run_validate(self.settings, None, self.out), 1)
        self.assertTrue(self.out.getvalue().startswith("Error: The configuration file specified does not exist"))

    def test_unparsable_config_file(self):
        self.write_config("ip = 192.0.2.1\n")
        self.assertEqual(run_validate(self.settings, None, self.out), 1)
        self.assertTrue(self.out.getvalue().startswith("Error: "))


class TestList(CommandTestCase):

    def test_facts_with_global_fallback(self):
        self.assertEqual(run_list(self.settings, 'web', self.out), 0)
        lines = self.out.getvalue().splitlines()

        self.assertEqual(lines[0], "Facts for web:")
        self.assertIn(" - Service Name: web", lines)
        self.assertIn(" - Check Command: curl -fsS http://127.0.0.1/health", lines)
        self.assertIn(" - Check Interval: 5", lines)
        self.assertIn(" - Service Rise: 3", lines)
        self.assertIn(" - Route Metric: 50", lines)
        self.assertIn(" - Route Nexthop: 192.0.2.1", lines)
        self.assertEqual(lines[-3:], [" - Announce IP's:", "   - 198.51.100.10", "   - 198.51.100.11/32"])

    def test_invalid_service_hint(self):
        run_list(self.settings, 'broken', self.out)
        self.assertEqual(self.out.getvalue(), (
            "Facts for broken:\n"
            "Error: Invalid configuration. Perhaps try exabgp-healthcheck -c validate -n broken\n"
        ))

    def test_all_services_separated(self):
        run_list(self.settings, None, self.out)
        text = self.out.getvalue()
        self.assertIn("Facts for web:", text)
        self.assertIn("\n\nFacts for broken:\n", text)


class TestStatus(CommandTestCase):

    def test_status_file_printed(self):
        with open(self.settings.status_file('web'), 'w') as f:
            f.write("Service State: UP\n")
        self.assertEqual(run_status(self.settings, 'web', self.out), 0)
        self.assertEqual(self.out.getvalue(), "STATUS FOR web:\nService State: UP\n")

    def test_missing_status_file(self):
        run_status(self.settings, 'web', self.out)
        self.assertEqual(self.out.getvalue(), "NO STATUS FILE FOR web - PERHAPS IT HAS NOT RUN YET\n")

    def test_named_status_without_config(self):
        os.unlink(self.config_path)
        self.assertEqual(run_status(self.settings, 'web', self.out), 0)

    def test_all_services(self):
        with open(self.settings.status_file('broken'), 'w') as f:
            f.write("Service State: DISABLED\n")
        run_status(self.settings, None, self.out)
        self.assertEqual(self.out.getvalue(), (
            "NO STATUS FILE FOR web - PERHAPS IT HAS NOT RUN YET\n"
            "\n"
            "STATUS FOR broken:\n"
            "Service State: DISABLED\n"
        ))


class TestDispatch(CommandTestCase):

    def test_routes_commands(self):
        self.assertEqual(dispatch(Validate('web'), self.settings, self.out), 0)
        self.assertIn("check web: Valid", self.out.getvalue())

    def test_announce_runs_supervisor(self):
        with patch('exabgp_healthcheck.commands.setup_signal_handlers') as mock_signals, \
             patch('exabgp_healthcheck.commands.startup') as mock_startup, \
             patch('exabgp_healthcheck.commands.run_loop') as mock_loop, \
             patch('exabgp_healthcheck.commands.cleanup') as mock_cleanup:
            self.assertEqual(dispatch(Announce('web'), self.settings, self.out), 0)

        mock_signals.assert_called_once_with(True)
        mock_startup.assert_called_once_with(self.settings, 'web')
        mock_loop.assert_called_once_with(mock_startup.return_value)
        mock_cleanup.assert_called_once_with(mock_startup.return_value)

    def test_cleanup_runs_when_loop_fails(self):
        with patch('exabgp_healthcheck.commands.setup_signal_handlers'), \
             patch('exabgp_healthcheck.commands.startup'), \
             patch('exabgp_healthcheck.commands.run_loop', side_effect=RuntimeError("boom")), \
             patch('exabgp_healthcheck.commands.cleanup') as mock_cleanup:
            with self.assertRaises(RuntimeError):
                dispatch(Announce('web'), self.settings, self.out)
        mock_cleanup.assert_called_once()

    def test_unknown_command(self):
        with self.assertRaises(TypeError):
            dispatch(object(), self.settings, self.out)


class TestMain(CommandTestCase):

    def tearDown(self):
        setup_logger(self.settings.logger_name, None, 1024, 1)
        super().tearDown()

    def _main(self, argv):
        with patch('sys.stdout', self.out), redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                entry.main(argv)
        return cm.exception.code

    def test_exit_codes(self):
        self.assertEqual(self._main(['-c', 'validate', '-n', 'web', '-f', self.config_path]), 0)
        self.assertEqual(self._main(['-c', 'validate', '-n', 'broken', '-f', self.config_path]), 1)

    def test_startup_failure_exits_one(self):
        missing = os.path.join(self.tmpdir.name, 'missing.conf')
        with patch('exabgp_healthcheck.commands.setup_signal_handlers'):
            code = self._main(['-c', 'announce', '-n', 'web', '-f', missing, '-d', self.tmpdir.name])
        self.assertEqual(code, 1)

    def test_keyboard_interrupt(self):
        with patch.object(entry, 'dispatch', side_effect=KeyboardInterrupt):
            self.assertEqual(self._main(['-c', 'list', '-f', self.config_path]), 130)

    def test_unexpected_error(self):
        with patch.object(entry, 'dispatch', side_effect=RuntimeError("boom")):
            self.assertEqual(self._main(['-c', 'list', '-f', self.config_path]), 1)


if __name__ == '__main__':
    unittest.main()
