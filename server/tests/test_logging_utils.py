import logging

from services.logging_utils import RedactingFilter


def make_record(msg, *args):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


def test_ice_credentials_are_masked():
    record = make_record("offer:\r\na=ice-ufrag:Ab12\r\na=ice-pwd:%s\r\na=mid:0", "s3cretpassword")

    assert RedactingFilter().filter(record) is True
    assert record.getMessage() == "offer:\r\na=ice-ufrag:***\r\na=ice-pwd:***\r\na=mid:0"


def test_fingerprint_hash_is_masked():
    record = make_record("a=fingerprint:sha-256 AB:CD:EF:01")
    RedactingFilter().filter(record)
    assert record.getMessage() == "a=fingerprint:sha-256 ***"


def test_plain_messages_untouched():
    record = make_record("abc joined room %s (%d present)", "JAM", 2)
    RedactingFilter().filter(record)
    assert record.getMessage() == "abc joined room JAM (2 present)"
