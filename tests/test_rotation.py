"""
Tests for credential rotation.
"""

from torn_sync.polling.rotation import CredentialRotator


class TestCredentialRotator:
    """Test round-robin selection per resource."""

    def test_round_robin_advances_by_one(self):
        rotator = CredentialRotator()
        keys = ["a", "b", "c"]

        picks = [rotator.next("faction:1", keys) for _ in range(6)]

        assert picks == ["b", "c", "a", "b", "c", "a"]
        assert rotator.last_used_index("faction:1") == 0

    def test_resources_rotate_independently(self):
        rotator = CredentialRotator()

        rotator.next("faction:1", ["a", "b"])

        assert rotator.last_used_index("faction:1") == 1
        assert rotator.last_used_index("faction:2") is None
        assert rotator.next("faction:2", ["x", "y"]) == "y"

    def test_index_stays_in_range_when_list_shrinks(self):
        """Test that a revoked credential does not break rotation."""
        rotator = CredentialRotator()
        rotator.next("faction:1", ["a", "b", "c"])
        rotator.next("faction:1", ["a", "b", "c"])

        assert rotator.next("faction:1", ["a", "b"]) == "b"
        assert 0 <= rotator.last_used_index("faction:1") < 2

    def test_single_credential(self):
        rotator = CredentialRotator()

        assert rotator.next("faction:1", ["only"]) == "only"
        assert rotator.next("faction:1", ["only"]) == "only"

    def test_empty_list_returns_none(self):
        rotator = CredentialRotator()

        assert rotator.next("faction:1", []) is None
        assert rotator.last_used_index("faction:1") is None

    def test_forget(self):
        rotator = CredentialRotator()
        rotator.next("faction:1", ["a", "b"])

        rotator.forget("faction:1")

        assert rotator.last_used_index("faction:1") is None
