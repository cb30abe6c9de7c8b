"""Tests for the output parsers."""

import plistlib

import pytest

from signtools import (
    EntitlementsError,
    SigningIdentity,
    parse_entitlements,
    parse_identities,
)

FIND_IDENTITY_OUTPUT = (
    '  1) ABCDEF1234567890ABCDEF1234567890ABCDEF12 '
    '"iPhone Developer: Jane Doe (XXXXXXXXXX)"\n'
    "  2) invalidlinewithoutdelimiter\n"
    '  3) FEDCBA9876543210FEDCBA9876543210FEDCBA98 '
    '"iPhone Distribution: Jane Doe"\n'
    "     2 valid identities found\n"
)


class TestParseIdentities:
    """Tests for parse_identities()."""

    def test_sample_output(self):
        """Test the sample table yields exactly the two valid identities."""
        identities = parse_identities(FIND_IDENTITY_OUTPUT)
        assert identities == [
            SigningIdentity(
                hash="ABCDEF1234567890ABCDEF1234567890ABCDEF12",
                name='"iPhone Developer: Jane Doe (XXXXXXXXXX)"',
            ),
            SigningIdentity(
                hash="FEDCBA9876543210FEDCBA9876543210FEDCBA98",
                name='"iPhone Distribution: Jane Doe"',
            ),
        ]

    def test_summary_line_excluded(self):
        """Test the trailing summary line never becomes an identity."""
        output = '  1) AAAA "Name"\n     1) BBBB "looks like a row"\n'
        identities = parse_identities(output)
        assert [i.hash for i in identities] == ["AAAA"]

    def test_line_without_delimiter_skipped(self):
        """Test lines lacking the ') ' separator are ignored."""
        output = 'Policy: Code Signing\n  1) AAAA "Name"\n  summary\n'
        assert parse_identities(output) == [SigningIdentity("AAAA", '"Name"')]

    def test_duplicates_kept_in_order(self):
        """Test duplicates are preserved in tool order."""
        output = (
            '  1) BBBB "Second"\n'
            '  2) AAAA "First"\n'
            '  3) BBBB "Second"\n'
            "     3 valid identities found\n"
        )
        hashes = [i.hash for i in parse_identities(output)]
        assert hashes == ["BBBB", "AAAA", "BBBB"]

    def test_name_split_on_first_space(self):
        """Test only the first space separates hash from name."""
        output = '  1) AAAA "Apple Development: A B C"\n  summary\n'
        (identity,) = parse_identities(output)
        assert identity.name == '"Apple Development: A B C"'

    def test_unquoted_name_kept(self):
        """Test names without surrounding quotes are kept verbatim."""
        output = "  1) AAAA plain name\n  summary\n"
        (identity,) = parse_identities(output)
        assert identity.name == "plain name"

    def test_empty_output(self):
        """Test empty output yields no identities."""
        assert parse_identities("") == []
        assert parse_identities("     0 valid identities found\n") == []


class TestParseEntitlements:
    """Tests for parse_entitlements()."""

    def test_extracts_entitlements(self):
        """Test the Entitlements subtree is returned."""
        entitlements = {
            "application-identifier": "ABCDE12345.com.example.app",
            "get-task-allow": True,
            "keychain-access-groups": ["ABCDE12345.*"],
        }
        payload = plistlib.dumps(
            {"Name": "Example", "Entitlements": entitlements}
        )
        assert parse_entitlements(payload) == entitlements

    def test_binary_plist(self):
        """Test binary plists decode the same way."""
        payload = plistlib.dumps(
            {"Entitlements": {"beta-reports-active": False}},
            fmt=plistlib.FMT_BINARY,
        )
        assert parse_entitlements(payload) == {"beta-reports-active": False}

    def test_missing_key_returns_none(self):
        """Test a profile without Entitlements yields None, not a crash."""
        payload = plistlib.dumps({"Name": "Example", "TeamName": "Example"})
        assert parse_entitlements(payload) is None

    def test_not_a_plist(self):
        """Test garbage payload raises EntitlementsError."""
        with pytest.raises(EntitlementsError, match="not a plist"):
            parse_entitlements(b"Verification failure\n")

    def test_malformed_xml(self):
        """Test truncated XML raises EntitlementsError."""
        payload = plistlib.dumps({"Entitlements": {}})[:60]
        with pytest.raises(EntitlementsError):
            parse_entitlements(payload)

    def test_root_not_dict(self):
        """Test a plist whose root is not a dict is rejected."""
        payload = plistlib.dumps(["Entitlements"])
        with pytest.raises(EntitlementsError, match="expected a dict"):
            parse_entitlements(payload)
