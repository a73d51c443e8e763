import pytest

from prefect_soci.index.builder import EmptyIndexError, builder_options, load_builder_factory
from prefect_soci.provider.errors import SociIndexerError


def factory(workspace, **kwargs):
    return workspace


class TestLoadBuilderFactory:
    def test_callable_is_returned(self):
        assert load_builder_factory(factory) is factory

    def test_import_path(self):
        loaded = load_builder_factory("prefect_soci.index.builder.builder_options")

        assert loaded is builder_options

    def test_not_callable(self):
        with pytest.raises(TypeError):
            load_builder_factory("prefect_soci.provider.defaults.user_agent")


def test_empty_index_error():
    error = EmptyIndexError()

    assert isinstance(error, SociIndexerError)
    assert "no ztocs created" in str(error)


def test_builder_options():
    assert builder_options() == {"build_tool_identifier": "github.com/prefect-soci/prefect-soci"}
