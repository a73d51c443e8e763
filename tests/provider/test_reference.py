import pytest

from prefect_soci.provider.errors import ReferenceParseError
from prefect_soci.provider.reference import ImageReference, is_digest, parse_image_reference

DIGEST = "sha256:9a161b6fc2f8ef74bb368f56edcac33a91b494d082da3693a600751a1a68b7d8"


class TestParseImageReference:
    """Unit tests for parse_image_reference."""

    @pytest.mark.parametrize(
        "desc, repository, tag_or_digest, registry",
        [
            ("foo/bar", "foo/bar", "latest", "docker.io"),
            ("foo/bar:version", "foo/bar", "version", "docker.io"),
            (f"foo/bar@{DIGEST}", "foo/bar", DIGEST, "docker.io"),
            ("public.ecr.aws/foo/bar", "foo/bar", "latest", "public.ecr.aws"),
            ("public.ecr.aws/foo/bar:version", "foo/bar", "version", "public.ecr.aws"),
            (f"public.ecr.aws/foo/bar@{DIGEST}", "foo/bar", DIGEST, "public.ecr.aws"),
            ("alpine", "alpine", "latest", "docker.io"),
            ("localhost:5000/app:dev", "app", "dev", "localhost:5000"),
            ("localhost/app", "app", "latest", "localhost"),
            (
                "123456789012.dkr.ecr.us-east-1.amazonaws.com/team/app:1.2.3",
                "team/app",
                "1.2.3",
                "123456789012.dkr.ecr.us-east-1.amazonaws.com",
            ),
        ],
    )
    def test_parse(self, desc, repository, tag_or_digest, registry):
        """Test registry, repository and tag defaults."""
        reference = parse_image_reference(desc)

        assert reference.repository == repository
        assert reference.tag_or_digest == tag_or_digest
        assert reference.registry == registry

    def test_digest_wins_over_tag(self):
        """Test that a reference is never parsed as having both a tag and a digest."""
        reference = parse_image_reference(f"public.ecr.aws/foo/bar:version@{DIGEST}")

        assert reference.repository == "foo/bar"
        assert reference.tag_or_digest == DIGEST
        assert reference.is_digest

    def test_tag_is_not_a_digest(self):
        reference = parse_image_reference("foo/bar:version")

        assert not reference.is_digest

    @pytest.mark.parametrize(
        "desc",
        [
            "",
            " foo/bar",
            "public.ecr.aws/",
            "Foo/Bar",
            "foo/bar:",
            "foo/bar:-bad",
            "foo/bar@sha256:1234",
            "foo/bar@latest",
            "foo//bar",
        ],
    )
    def test_parse_invalid(self, desc):
        """Test that malformed references are rejected."""
        with pytest.raises(ReferenceParseError):
            parse_image_reference(desc)

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_image_reference("foo/bar@nope")

    def test_reference_is_immutable(self):
        reference = parse_image_reference("foo/bar")

        with pytest.raises(Exception):
            reference.tag_or_digest = "other"

    def test_str(self):
        assert str(parse_image_reference("foo/bar")) == "docker.io/foo/bar:latest"
        assert str(parse_image_reference(f"foo/bar@{DIGEST}")) == f"docker.io/foo/bar@{DIGEST}"


class TestIsDigest:
    def test_sha256(self):
        assert is_digest(DIGEST)

    def test_short_sha256(self):
        assert not is_digest("sha256:abc")

    def test_other_algorithm(self):
        assert is_digest("sha512:" + "a" * 128)

    def test_tag(self):
        assert not is_digest("latest")
        assert not is_digest("")


def test_image_reference_requires_fields():
    with pytest.raises(Exception):
        ImageReference(registry="", repository="foo", tag_or_digest="latest")
