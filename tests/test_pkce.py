"""Unit tests for PKCE verifier/challenge checks."""

import pytest

from projectflow.service import pkce

VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
# RFC 7636 appendix B
RFC_CHALLENGE = "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


class TestVerify:
    def test_rfc_example_verifies(self):
        assert pkce.verify(VERIFIER, RFC_CHALLENGE, "S256")

    def test_compute_challenge_matches_rfc(self):
        assert pkce.compute_challenge(VERIFIER, "S256") == RFC_CHALLENGE

    @pytest.mark.parametrize("method", ["S256", "plain"])
    def test_generated_pairs_verify(self, method):
        verifier = pkce.generate_verifier()
        challenge = pkce.compute_challenge(verifier, method)
        assert pkce.verify(verifier, challenge, method)

    @pytest.mark.parametrize("method", ["S256", "plain"])
    def test_single_mutated_character_fails(self, method):
        challenge = pkce.compute_challenge(VERIFIER, method)
        for index in (0, len(VERIFIER) // 2, len(VERIFIER) - 1):
            replacement = "A" if VERIFIER[index] != "A" else "B"
            mutated = VERIFIER[:index] + replacement + VERIFIER[index + 1 :]
            assert not pkce.verify(mutated, challenge, method)

    def test_unknown_method_never_verifies(self):
        assert not pkce.verify(VERIFIER, VERIFIER, "S512")
        assert not pkce.verify(VERIFIER, VERIFIER, "")

    def test_s256_challenge_is_not_accepted_as_plain(self):
        assert not pkce.verify(VERIFIER, RFC_CHALLENGE, "plain")

    @pytest.mark.parametrize(
        "verifier",
        [
            "short",
            "a" * 42,
            "a" * 129,
            "a" * 42 + "!",
            "",
        ],
    )
    def test_malformed_verifiers_fail(self, verifier):
        challenge = pkce.compute_challenge("a" * 43, "plain")
        assert not pkce.verify(verifier, challenge, "plain")


class TestShapes:
    def test_valid_verifier_bounds(self):
        assert pkce.is_valid_verifier("a" * 43)
        assert pkce.is_valid_verifier("a" * 128)
        assert pkce.is_valid_verifier("aZ09-._~" * 6)
        assert not pkce.is_valid_verifier("a" * 43 + " ")

    def test_challenge_shape_depends_on_method(self):
        assert pkce.is_valid_challenge(RFC_CHALLENGE, "S256")
        assert not pkce.is_valid_challenge(RFC_CHALLENGE + "=", "S256")
        assert not pkce.is_valid_challenge("abc", "plain")
        assert not pkce.is_valid_challenge(RFC_CHALLENGE, "none")

    def test_generate_verifier_length(self):
        assert len(pkce.generate_verifier(43)) == 43
        assert len(pkce.generate_verifier(128)) == 128
        with pytest.raises(ValueError):
            pkce.generate_verifier(20)

    def test_compute_challenge_rejects_unknown_method(self):
        with pytest.raises(ValueError):
            pkce.compute_challenge(VERIFIER, "S1")
