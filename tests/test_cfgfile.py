import unittest.mock as mock
from pathlib import Path

import yaml

import kubeframe
import kubeframe.cfgfile as cfgfile
from kubeframe.dtypes import ClusterConfig, Config


class TestLoadConfig:
    def test_load_default_config(self):
        """The packaged default configuration must be valid."""
        cfg, err = cfgfile.load(kubeframe.DEFAULT_CONFIG_FILE)
        assert not err
        assert cfg == kubeframe.DEFAULT_CONFIG
        assert cfg.kubeconfig == Path("~/.kube/config")
        assert cfg.contexts == {}
        assert cfg.async_delete is True
        assert cfg.timeout_readiness == 300

        # The defaults in the file must match those of the model.
        assert cfg == Config()

    def test_load_ok(self, tmp_path):
        fname = tmp_path / "config.yaml"
        fname.write_text(yaml.dump({
            "kubecontext": "kind",
            "contexts": {" Prod ": {"url": "https://1.2.3.4", "token": "t"}},
            "poll_interval": 0.5,
            "async_delete": False,
            "store_yaml_path": "out",
        }))

        cfg, err = cfgfile.load(fname)
        assert not err
        assert cfg.kubecontext == "kind"
        assert cfg.contexts == {"prod": ClusterConfig(url="https://1.2.3.4", token="t")}
        assert cfg.poll_interval == 0.5
        assert cfg.async_delete is False

        # Relative paths are relative to the config file.
        assert cfg.store_yaml_path == tmp_path.absolute() / "out"

    def test_load_err(self, tmp_path):
        fname = tmp_path / "config.yaml"

        # File does not exist.
        assert cfgfile.load(fname) == (Config(), True)

        # Corrupt YAML.
        fname.write_text("foo: bar: blah")
        assert cfgfile.load(fname) == (Config(), True)

        # Invalid values.
        for raw in ({"poll_interval": 0}, {"timeout_readiness": -1},
                    {"contexts": {"": {}}}, {"log_level": "loud"}):
            fname.write_text(yaml.dump(raw))
            assert cfgfile.load(fname) == (Config(), True)

    def test_load_empty_file(self, tmp_path):
        fname = tmp_path / "config.yaml"
        fname.write_text("")
        assert cfgfile.load(fname) == (Config(), False)


class TestLoadEnv:
    def test_no_env(self):
        cfg = Config()
        assert cfgfile.load_env(cfg, {}) == (cfg, False)

    def test_default_context(self):
        env = {"KUBECONFIG": "/tmp/kubeconf"}
        cfg, err = cfgfile.load_env(Config(), env)
        assert not err
        assert cfg.kubeconfig == Path("/tmp/kubeconf")
        assert cfg.contexts == {}

        env = {"KUBE_URL": "https://1.2.3.4", "KUBE_TOKEN": "token"}
        cfg, err = cfgfile.load_env(Config(), env)
        assert not err
        assert cfg.contexts == {
            "default": ClusterConfig(url="https://1.2.3.4", token="token"),
        }

    def test_extra_contexts(self):
        env = {
            "KUBE_URL_PROD": "https://1.2.3.4",
            "KUBE_TOKEN_PROD": "token",
            "KUBECONFIG_DEV": "/tmp/dev",
            "KUBE_URL_EMPTY": "",
            "UNRELATED": "foo",
        }
        cfg, err = cfgfile.load_env(Config(), env)
        assert not err
        assert cfg.contexts == {
            "prod": ClusterConfig(url="https://1.2.3.4", token="token"),
            "dev": ClusterConfig(kubeconfig=Path("/tmp/dev")),
        }

    def test_env_overrides_file(self):
        cfg = Config(contexts={"prod": ClusterConfig(url="https://old", token="t")})
        out, err = cfgfile.load_env(cfg, {"KUBE_URL_PROD": "https://new"})
        assert not err
        assert out.contexts["prod"] == ClusterConfig(url="https://new", token="t")

        # Must not modify the input.
        assert cfg.contexts["prod"].url == "https://old"

    def test_options(self, tmp_path):
        env = {
            "KUBEFRAME_ASYNC_DELETE": "false",
            "KUBEFRAME_STORE_YAML_PATH": str(tmp_path),
        }
        cfg, err = cfgfile.load_env(Config(), env)
        assert not err
        assert cfg.async_delete is False
        assert cfg.store_yaml_path == tmp_path

        cfg, err = cfgfile.load_env(Config(), {"KUBEFRAME_ASYNC_DELETE": "maybe"})
        assert err

    def test_parse_bool(self):
        assert cfgfile.parse_bool("True") is True
        assert cfgfile.parse_bool(" yes ") is True
        assert cfgfile.parse_bool("0") is False


class TestLoadConfigFile:
    def test_without_file(self, tmp_path):
        env = {"ENV_FILE": str(tmp_path / "missing.yaml"), "KUBECONFIG": "/tmp/k"}
        cfg, err = cfgfile.load_config(env)
        assert not err
        assert cfg.kubeconfig == Path("/tmp/k")

    def test_with_file(self, tmp_path):
        fname = tmp_path / "config.yaml"
        fname.write_text(yaml.dump({"kubecontext": "kind", "poll_interval": 2}))

        env = {"ENV_FILE": str(fname), "KUBE_URL_PROD": "https://1.2.3.4"}
        cfg, err = cfgfile.load_config(env)
        assert not err
        assert (cfg.kubecontext, cfg.poll_interval) == ("kind", 2)
        assert cfg.contexts["prod"].url == "https://1.2.3.4"

        # Invalid config file.
        fname.write_text("poll_interval: -1")
        assert cfgfile.load_config(env) == (Config(), True)

    def test_os_environ(self, tmp_path):
        env = {"ENV_FILE": str(tmp_path / "missing.yaml")}
        with mock.patch.dict(cfgfile.os.environ, env, clear=True):
            assert cfgfile.load_config() == (Config(), False)
