"""Tests for winprov.resolver module."""

from __future__ import annotations

import pytest

from winprov.exceptions import UnresolvableVersionError
from winprov.models import Architecture, EditionClass
from winprov.resolver import normalize, resolve, tokenize


class TestNormalize:
    def test_strips_quotes_case_and_whitespace(self):
        assert normalize('  "Windows   11 PRO" ') == "windows 11 pro"

    def test_tokenize_keeps_language_tags_whole(self):
        assert tokenize("11 de-de x64") == ["11", "de-de", "x64"]

    def test_tokenize_splits_on_separators(self):
        assert tokenize("win_11/pro") == ["win", "11", "pro"]

    def test_tokenize_keeps_dotted_release(self):
        assert tokenize("8.1 pro") == ["8.1", "pro"]


class TestScenarios:
    def test_bare_desktop_release(self, catalog):
        descriptor = resolve("11", catalog)
        assert descriptor.canonical_key == "win11x64"
        assert descriptor.edition_class == EditionClass.DESKTOP
        assert descriptor.architecture == Architecture.X64
        assert descriptor.is_evaluation is False

    def test_bare_server_release(self, catalog):
        descriptor = resolve("2022", catalog)
        assert descriptor.canonical_key == "win2022-eval"
        assert descriptor.edition_class == EditionClass.SERVER
        assert descriptor.is_evaluation is True

    def test_unknown_token_is_named(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("bogus-token", catalog)
        assert exc.value.token == "bogus-token"
        assert "bogus-token" in str(exc.value)
        assert exc.value.stage == "resolve"


class TestAliases:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("win11", "win11x64"),
            ("Windows 11", "win11x64"),
            ("11e", "win11x64-enterprise-eval"),
            ("10l", "win10x64-enterprise-ltsc-eval"),
            ("8.1", "win81x64"),
            ("2012r2", "win2012r2-eval"),
            ("WIN2008R2", "win2008r2"),
            ("xp", "winxpx86"),
            ("win11x64", "win11x64"),
        ],
    )
    def test_exact_aliases(self, catalog, raw, expected):
        assert resolve(raw, catalog).canonical_key == expected

    def test_same_input_same_descriptor(self, catalog):
        assert resolve("11", catalog) == resolve("11", catalog)


class TestModifiers:
    def test_edition_and_noise_words(self, catalog):
        assert resolve("Microsoft Windows 11 Enterprise", catalog).canonical_key == "win11x64-enterprise-eval"

    def test_license_modifier_picks_evaluation(self, catalog):
        assert resolve("10 eval", catalog).canonical_key == "win10x64-enterprise-eval"

    def test_arch_modifier(self, catalog):
        assert resolve("7 x86", catalog).canonical_key == "win7x86"
        assert resolve("windows 11 arm64", catalog).canonical_key == "win11arm64"

    def test_compact_suffix_on_noise_prefixed_release(self, catalog):
        assert resolve("win10 l", catalog).canonical_key == "win10x64-enterprise-ltsc-eval"

    def test_language_modifier_sets_language(self, catalog):
        descriptor = resolve("11 de-DE", catalog)
        assert descriptor.canonical_key == "win11x64"
        assert descriptor.language == "de-DE"

    def test_language_word(self, catalog):
        assert resolve("10 german", catalog).language == "de-DE"

    def test_default_language_applies(self, catalog):
        assert resolve("2022", catalog, default_language="fr-FR").language == "fr-FR"

    def test_server_class_assertion(self, catalog):
        assert resolve("server 2022", catalog).canonical_key == "win2022-eval"
        assert resolve("windows server 2008", catalog).canonical_key == "win2008r2"


class TestFailures:
    def test_unknown_modifier_named(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("11 bogus", catalog)
        assert exc.value.token == "bogus"

    def test_unsatisfiable_arch_named(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("11 x86", catalog)
        assert exc.value.token == "x86"

    def test_server_assertion_on_desktop_release(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("server 11", catalog)
        assert exc.value.token == "server"

    def test_conflicting_modifiers(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("11 x64 arm64", catalog)
        assert exc.value.token == "arm64"

    def test_two_releases(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("10 11", catalog)
        assert exc.value.token == "11"

    def test_empty_input(self, catalog):
        with pytest.raises(UnresolvableVersionError):
            resolve("   ", catalog)

    def test_no_release_names_whole_input(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("pro x64", catalog)
        assert exc.value.token == "pro x64"

    @pytest.mark.parametrize(
        "raw,token",
        [("11!", "11!"), ("11 @@@", "@@@"), ("win11 pro+", "pro+"), ("11 ???", "???")],
    )
    def test_unsupported_characters_rejected(self, catalog, raw, token):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve(raw, catalog)
        assert exc.value.token == token
        assert exc.value.raw == raw

    def test_unknown_chunk_reported_whole(self, catalog):
        with pytest.raises(UnresolvableVersionError) as exc:
            resolve("11 bogus-token", catalog)
        assert exc.value.token == "bogus-token"

    def test_separators(self, catalog):
        assert resolve("11, pro", catalog).canonical_key == "win11x64"
        assert resolve("2022-eval", catalog).canonical_key == "win2022-eval"


class TestTokenize:
    def test_vocabulary_words_kept_whole(self):
        assert tokenize("7 x86_64", {"x86_64"}) == ["7", "x86_64"]

    def test_rejects_stray_characters(self):
        with pytest.raises(UnresolvableVersionError) as exc:
            tokenize("11 pro!")
        assert exc.value.token == "pro!"
