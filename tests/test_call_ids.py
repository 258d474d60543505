from services.call_ids import CallIdNormalizer

from conftest import LONG_ID, SHORT_ID


def test_empty_id_returns_none():
    normalizer = CallIdNormalizer()
    assert normalizer.normalize(None) is None
    assert normalizer.normalize("") is None
    assert len(normalizer) == 0


def test_first_sighting_becomes_canonical():
    normalizer = CallIdNormalizer()
    assert normalizer.normalize(SHORT_ID) == SHORT_ID
    assert normalizer.normalize(SHORT_ID) == SHORT_ID
    assert normalizer.aliases_of(SHORT_ID) == [SHORT_ID]


def test_long_id_after_short_id_converges():
    normalizer = CallIdNormalizer()
    normalizer.normalize(SHORT_ID)

    assert normalizer.is_long_encoded(LONG_ID)
    assert normalizer.normalize(LONG_ID) == SHORT_ID
    assert normalizer.lookup(LONG_ID) == SHORT_ID
    assert sorted(normalizer.aliases_of(SHORT_ID)) == sorted([SHORT_ID, LONG_ID])


def test_long_id_first_gets_its_own_key():
    normalizer = CallIdNormalizer()
    assert normalizer.normalize(LONG_ID) == LONG_ID
    assert normalizer.normalize(SHORT_ID) == SHORT_ID


def test_long_length_without_marker_is_not_aliased():
    normalizer = CallIdNormalizer()
    normalizer.normalize(SHORT_ID)
    plain_long = "z" * 80
    assert not normalizer.is_long_encoded(plain_long)
    assert normalizer.normalize(plain_long) == plain_long


def test_lookup_does_not_register():
    normalizer = CallIdNormalizer()
    assert normalizer.lookup(SHORT_ID) is None
    assert SHORT_ID not in normalizer


def test_forget_removes_every_alias():
    normalizer = CallIdNormalizer()
    normalizer.normalize(SHORT_ID)
    normalizer.normalize(LONG_ID)
    normalizer.normalize("other-call")

    assert normalizer.forget(SHORT_ID) == 2
    assert normalizer.lookup(SHORT_ID) is None
    assert normalizer.lookup(LONG_ID) is None
    assert normalizer.lookup("other-call") == "other-call"


def test_link_merges_alias_groups():
    normalizer = CallIdNormalizer()
    normalizer.normalize(SHORT_ID)
    normalizer.normalize(LONG_ID)

    assert normalizer.link(SHORT_ID, "connected-id") == "connected-id"

    assert normalizer.normalize(SHORT_ID) == "connected-id"
    assert normalizer.normalize(LONG_ID) == "connected-id"
    assert normalizer.link(SHORT_ID, "connected-id") == "connected-id"
    assert normalizer.forget("connected-id") == 3
