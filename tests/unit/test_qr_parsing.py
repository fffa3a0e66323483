"""Scanned-code classification tests."""

import json

import pytest

from meetup.errors import UnrecognizedCodeError
from meetup.social.qr import (
    FriendRequestCode,
    ProfileCode,
    ProfileLink,
    RawLookup,
    ReferralCode,
    friend_request_payload,
    parse_scanned_code,
)


class TestParseScannedCode:
    def test_friend_request_json(self):
        data = friend_request_payload("usr_1", "Alice", 1000, 500)
        assert parse_scanned_code(data) == FriendRequestCode("usr_1", "Alice", 1500)

    def test_profile_json(self):
        data = json.dumps({"type": "user_profile", "userId": "usr_2", "nickname": "Bob"})
        assert parse_scanned_code(data) == ProfileCode("usr_2")

    def test_unknown_json_type_rejected(self):
        with pytest.raises(UnrecognizedCodeError):
            parse_scanned_code(json.dumps({"type": "coupon", "userId": "usr_1"}))

    @pytest.mark.parametrize(
        ("data", "expected"),
        [
            ("meetup://add-friend/usr_1", FriendRequestCode("usr_1")),
            ("meetup://add-friend/usr_1/Alice%20B", FriendRequestCode("usr_1", "Alice B")),
            ("meetup://referral/REF_ABCD_123456", ReferralCode("REF_ABCD_123456")),
            ("meetup://profile/Alice%20B", ProfileLink("Alice B")),
            ("FRIEND_usr_1_1700000000000", FriendRequestCode("usr_1")),
            ("https://meetup.app/join?ref=REF_ABCD_123456", ReferralCode("REF_ABCD_123456")),
            ("REF_ABCD_123456", ReferralCode("REF_ABCD_123456")),
            ("alice@example.com", RawLookup("alice@example.com")),
        ],
    )
    def test_recognized_shapes(self, data, expected):
        assert parse_scanned_code(data) == expected

    @pytest.mark.parametrize("data", ["", "   "])
    def test_empty_rejected(self, data):
        with pytest.raises(UnrecognizedCodeError):
            parse_scanned_code(data)

    def test_surrounding_whitespace_ignored(self):
        assert parse_scanned_code("  meetup://referral/REF_X_1  ") == ReferralCode("REF_X_1")
