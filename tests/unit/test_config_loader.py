import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from mathsteps.utils.config_loader import (
    CONFIG_PATH_ENV,
    UPLOAD_DIR_ENV,
    ConfigError,
    ExplanationConfig,
    ModelEndpointConfig,
    OCRConfig,
    load_models_config,
    parse_models_config,
)

_SAMPLE = """
ocr:
  provider: openai
  model: gpt-4o-mini
  api_key_env: MATHSTEPS_TEST_OCR_KEY
  max_retries: 3
llm:
  explanation:
    provider: nvidia
    model: meta/llama-3.1-70b-instruct
    temperature: 0.5
    system_prompt_file: prompts/system.txt
server:
  upload_dir: /tmp/uploads
  max_upload_mb: 5
  port: 9000
"""


class ConfigLoaderTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _write(self, content: str) -> str:
        path = self.tmp / "models.yml"
        path.write_text(content, encoding="utf-8")
        return str(path)

    def test_loads_sections(self) -> None:
        with patch.dict(os.environ, {UPLOAD_DIR_ENV: ""}):
            config = load_models_config(self._write(_SAMPLE))
        self.assertEqual(config.ocr.provider, "openai")
        self.assertEqual(config.ocr.effective_max_retries(), 3)
        self.assertEqual(config.ocr.timeout_seconds(), 30)
        self.assertEqual(config.explanation.provider, "nvidia")
        self.assertAlmostEqual(config.explanation.effective_temperature(), 0.5)
        self.assertEqual(config.explanation.effective_max_tokens(), 4096)
        self.assertEqual(config.explanation.timeout_seconds(), 180)
        self.assertEqual(config.explanation.system_prompt_file, "prompts/system.txt")
        self.assertEqual(config.server.upload_dir, "/tmp/uploads")
        self.assertEqual(config.server.max_upload_mb, 5)
        self.assertEqual(config.server.port, 9000)
        self.assertEqual(config.server.history_file, "data/history.json")

    def test_empty_document_gives_unconfigured_defaults(self) -> None:
        config = parse_models_config({})
        self.assertFalse(config.ocr.is_configured)
        self.assertFalse(config.explanation.is_configured)
        self.assertEqual(config.ocr.effective_max_retries(), 1)
        self.assertAlmostEqual(config.explanation.effective_temperature(), 0.3)
        self.assertIn("ocr=stub(not configured)", config.describe_status())

    def test_env_var_selects_file_and_overrides_upload_dir(self) -> None:
        path = self._write(_SAMPLE)
        with patch.dict(os.environ, {CONFIG_PATH_ENV: path, UPLOAD_DIR_ENV: "/data/up"}):
            config = load_models_config()
        self.assertEqual(config.server.upload_dir, "/data/up")

    def test_missing_file_raises(self) -> None:
        with self.assertRaises(ConfigError):
            load_models_config(str(self.tmp / "absent.yml"))

    def test_non_mapping_root_raises(self) -> None:
        with self.assertRaises(ConfigError):
            load_models_config(self._write("- a\n- b\n"))

    def test_invalid_yaml_raises(self) -> None:
        with self.assertRaises(ConfigError):
            load_models_config(self._write("ocr: [unclosed\n"))

    def test_invalid_value_raises(self) -> None:
        with self.assertRaises(ConfigError):
            parse_models_config({"ocr": {"timeout_sec": "soon"}})

    def test_api_key_precedence(self) -> None:
        with patch.dict(os.environ, {"MATHSTEPS_TEST_KEY": "from-env"}):
            self.assertEqual(ModelEndpointConfig(api_key="inline", api_key_env="MATHSTEPS_TEST_KEY").resolve_api_key(), "inline")
            self.assertEqual(ModelEndpointConfig(api_key_env="MATHSTEPS_TEST_KEY").resolve_api_key(), "from-env")
        self.assertEqual(ModelEndpointConfig().resolve_api_key(), "")

    def test_status_hides_secrets(self) -> None:
        config = parse_models_config(
            {"ocr": {"provider": "openai", "model": "gpt-4o-mini", "api_key": "sk-secret"}}
        )
        status = config.describe_status()
        self.assertEqual(status, "config loaded: ocr=openai/gpt-4o-mini; llm=stub(not configured)")
        self.assertNotIn("sk-secret", status)

    def test_stage_specific_timeouts(self) -> None:
        self.assertEqual(OCRConfig(timeout_sec=12).timeout_seconds(), 12)
        self.assertEqual(OCRConfig(timeout_sec=-1).timeout_seconds(), 30)
        self.assertEqual(ExplanationConfig().timeout_seconds(), 180)


if __name__ == "__main__":
    unittest.main()
