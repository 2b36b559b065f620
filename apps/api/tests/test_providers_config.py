#!/usr/bin/env python3

from __future__ import annotations

import os
import unittest

from packages.lantern_core.llm.providers import (
    DEFAULT_OPENAI_COMPATIBLE_BASE_URL,
    ProviderExecutionError,
    ProviderUnavailableError,
    configured_tiers,
    extract_json_object,
    tier_provider_config,
)


class ProviderConfigTests(unittest.TestCase):
    _env_keys = (
        "LANTERN_LLM_MODEL",
        "LANTERN_LLM_STRONG_MODEL",
        "LANTERN_LLM_FAST_MODEL",
        "LANTERN_LLM_CHEAP_MODEL",
        "LANTERN_LLM_PROVIDER",
        "LANTERN_LLM_STRONG_PROVIDER",
        "LANTERN_LLM_FAST_PROVIDER",
        "LANTERN_LLM_CHEAP_PROVIDER",
        "LANTERN_LLM_BASE_URL",
        "LANTERN_LLM_STRONG_BASE_URL",
        "LANTERN_LLM_FAST_BASE_URL",
        "LANTERN_LLM_CHEAP_BASE_URL",
        "LANTERN_LLM_API_KEY",
        "LANTERN_LLM_STRONG_API_KEY",
        "LANTERN_LLM_FAST_API_KEY",
        "LANTERN_LLM_CHEAP_API_KEY",
        "LANTERN_LLM_ALLOW_EMPTY_API_KEY",
        "OPENAI_API_KEY",
    )

    def setUp(self) -> None:
        self._env_backup = {k: os.environ.get(k) for k in self._env_keys}
        for key in self._env_keys:
            os.environ.pop(key, None)

    def tearDown(self) -> None:
        for key, value in self._env_backup.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_missing_model_means_tier_is_unavailable(self) -> None:
        with self.assertRaises(ProviderUnavailableError) as raised:
            tier_provider_config("strong")
        self.assertEqual(raised.exception.error_code, "missing_model")
        self.assertEqual(configured_tiers(), {"strong": None, "fast": None, "cheap": None})

    def test_tier_specific_model_override_precedence(self) -> None:
        os.environ["LANTERN_LLM_ALLOW_EMPTY_API_KEY"] = "1"
        os.environ["LANTERN_LLM_MODEL"] = "global-model"
        os.environ["LANTERN_LLM_FAST_MODEL"] = "fast-tier-model"

        fast = tier_provider_config("fast")
        cheap = tier_provider_config("cheap")

        self.assertEqual(fast.model, "fast-tier-model")
        self.assertEqual(cheap.model, "global-model")
        self.assertEqual(cheap.base_url, DEFAULT_OPENAI_COMPATIBLE_BASE_URL)
        self.assertEqual(fast.model_name(), "openai_compatible:fast-tier-model")

    def test_missing_api_key_is_rejected_by_default(self) -> None:
        os.environ["LANTERN_LLM_MODEL"] = "global-model"
        with self.assertRaises(ProviderUnavailableError) as raised:
            tier_provider_config("strong")
        self.assertEqual(raised.exception.error_code, "missing_api_key")

    def test_unsupported_provider_is_rejected(self) -> None:
        os.environ["LANTERN_LLM_PROVIDER"] = "carrier_pigeon"
        with self.assertRaises(ProviderUnavailableError) as raised:
            tier_provider_config("cheap")
        self.assertEqual(raised.exception.error_code, "unsupported_provider")

    def test_base_url_trailing_slash_is_stripped(self) -> None:
        os.environ["LANTERN_LLM_MODEL"] = "m"
        os.environ["LANTERN_LLM_API_KEY"] = "k"
        os.environ["LANTERN_LLM_BASE_URL"] = "http://localhost:8080/v1/"
        self.assertEqual(tier_provider_config("cheap").base_url, "http://localhost:8080/v1")

    def test_vendor_api_key_variable_is_not_read(self) -> None:
        os.environ["LANTERN_LLM_MODEL"] = "m"
        os.environ["OPENAI_API_KEY"] = "vendor-key"
        with self.assertRaises(ProviderUnavailableError) as raised:
            tier_provider_config("fast")
        self.assertEqual(raised.exception.error_code, "missing_api_key")

    def test_tier_provider_override_is_checked_per_tier(self) -> None:
        os.environ["LANTERN_LLM_MODEL"] = "m"
        os.environ["LANTERN_LLM_API_KEY"] = "k"
        os.environ["LANTERN_LLM_STRONG_PROVIDER"] = "carrier_pigeon"
        self.assertEqual(configured_tiers(), {"strong": None, "fast": "openai_compatible:m", "cheap": "openai_compatible:m"})


class ExtractJsonObjectTests(unittest.TestCase):
    def test_plain_object(self) -> None:
        self.assertEqual(extract_json_object('{"delta": 1, "rationale": "kind"}')["delta"], 1)

    def test_object_wrapped_in_prose(self) -> None:
        text = 'Sure! Here you go: {"line": "Mind the {lanterns}", "emotion": "warm"} hope that helps'
        self.assertEqual(extract_json_object(text)["line"], "Mind the {lanterns}")

    def test_skips_braces_that_are_not_json(self) -> None:
        text = 'I {think} so: {"hint": "ask about the well"}'
        self.assertEqual(extract_json_object(text), {"hint": "ask about the well"})

    def test_json_array_is_not_an_object(self) -> None:
        with self.assertRaises(ProviderExecutionError) as raised:
            extract_json_object("[1, 2, 3]")
        self.assertEqual(raised.exception.error_code, "invalid_json_output")

    def test_no_object_raises(self) -> None:
        with self.assertRaises(ProviderExecutionError) as raised:
            extract_json_object("no json here")
        self.assertEqual(raised.exception.error_code, "invalid_json_output")

    def test_empty_response_raises(self) -> None:
        with self.assertRaises(ProviderExecutionError) as raised:
            extract_json_object("   ")
        self.assertEqual(raised.exception.error_code, "empty_response")


if __name__ == "__main__":
    unittest.main()
