import logging
import unittest.mock as mock

import colorama

import kubeframe.callbacks as callbacks
import kubeframe.logs as logs
from kubeframe.dtypes import MetaManifest

from .test_helpers import mk_cm, mk_ns


class TestCallbacks:
    def test_log_callback(self):
        meta = MetaManifest("v1", "ConfigMap", "ns", "foo")
        with mock.patch.object(callbacks.logit, "log") as m_log:
            callbacks.log_callback("Created", logging.WARNING)(meta)
        m_log.assert_called_once_with(logging.WARNING, "Created ConfigMap foo in namespace ns")

    def test_label_callback(self, manager, cluster):
        manager.add_create_callback(callbacks.label_callback(manager, {"run": "42"}))
        manager.create_resource_with_wait(mk_cm("foo"), mk_ns("bar"))

        for key in (("ConfigMap", "default", "foo"), ("Namespace", None, "bar")):
            assert cluster.objects[key]["metadata"]["labels"] == {"run": "42"}


class TestLogs:
    def test_format_resource(self):
        meta = MetaManifest("v1", "ConfigMap", "ns", "foo")
        assert logs.format_resource("Creating", meta) == "Creating ConfigMap foo in namespace ns"
        assert logs.format_resource("Creating", meta, "prod") == \
            "Creating ConfigMap foo in namespace ns (context prod)"

        meta = MetaManifest("v1", "Namespace", None, "foo")
        assert logs.format_resource("Deleting", meta) == "Deleting Namespace foo"

        out = logs.format_resource("Deleting", meta, color=True)
        assert out.startswith(colorama.Fore.RED + "Deleting")
        assert colorama.Style.RESET_ALL in out

    def test_log_resource(self):
        meta = MetaManifest("v1", "Namespace", None, "foo")

        # Colour coded by default.
        with mock.patch.object(logs.logit, "log") as m_log:
            logs.log_resource("Creating", meta, "prod", logging.DEBUG)
        green = f"{colorama.Fore.GREEN}Creating{colorama.Style.RESET_ALL}"
        m_log.assert_called_once_with(logging.DEBUG, f"{green} Namespace foo (context prod)")

        with mock.patch.object(logs.logit, "log") as m_log:
            logs.log_resource("Creating", meta, "prod", logging.DEBUG, color=False)
        m_log.assert_called_once_with(logging.DEBUG, "Creating Namespace foo (context prod)")

    def test_manager_logs_coloured_operations(self, manager):
        with mock.patch.object(logs.logit, "log") as m_log:
            manager.create_resource_without_wait(mk_ns("foo"))
            manager.delete_resource_without_wait(mk_ns("foo"))

        msgs = [_.args[1] for _ in m_log.call_args_list]
        assert f"{colorama.Fore.GREEN}Creating{colorama.Style.RESET_ALL} Namespace foo" \
            " (context default)" in msgs
        assert f"{colorama.Fore.RED}Deleting{colorama.Style.RESET_ALL} Namespace foo" \
            " (context default)" in msgs

    def test_log_separator(self):
        assert logs.log_separator() == "#" * 76
        assert logs.log_separator("-", 3) == "---"

    def test_setup_logging(self):
        logger = logging.getLogger("kubeframe")
        num_handlers = len(logger.handlers)

        logs.setup_logging(0)
        assert logger.level == logging.ERROR
        logs.setup_logging(1)
        assert logger.level == logging.WARNING
        logs.setup_logging(2)
        assert logger.level == logging.INFO

        # Repeated calls must not install more handlers.
        assert len(logger.handlers) == num_handlers

        # Restore the log level for the other tests.
        logs.setup_logging(9)
        assert logger.level == logging.DEBUG
