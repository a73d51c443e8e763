import logging
from typing import Callable, Protocol, Union

from prefect.utilities.importtools import import_object

from prefect_soci.provider.defaults import build_tool_identifier
from prefect_soci.provider.errors import SociIndexerError
from prefect_soci.provider.models import Descriptor, Image
from prefect_soci.provider.store import OciLayoutStore

logger = logging.getLogger(__name__)


class EmptyIndexError(SociIndexerError):
    """
    No zTOCs were created: every layer was either skipped or too small.
    """

    def __init__(self, message: str = "no ztocs created, all layers either skipped or produced errors", **kwargs):
        super().__init__(message, **kwargs)


class IndexBuilder(Protocol):
    """Builds zTOCs and the SOCI index manifest. Implemented outside prefect-soci."""

    def convert(
        self,
        image: Image,
        content_store: OciLayoutStore,
        artifact_store: OciLayoutStore,
    ) -> Descriptor:
        """
        Build the SOCI index of a pulled image.

        :param image: name and manifest descriptor of the image in content_store
        :param content_store: store holding the pulled image
        :param artifact_store: store receiving the index and its zTOCs
        :return: descriptor of the index manifest in artifact_store
        :raises EmptyIndexError: if no layer could be indexed
        """
        ...


# Receives the run's workspace so builders can keep their database in it
IndexBuilderFactory = Callable[..., IndexBuilder]


def load_builder_factory(builder: Union[str, IndexBuilderFactory]) -> IndexBuilderFactory:
    """
    Resolve an index builder factory from a dotted import path.

    :param builder: ``package.module.factory`` path or the factory itself
    """
    if callable(builder):
        return builder

    logger.debug("Loading index builder factory %s", builder)
    factory = import_object(builder)
    if not callable(factory):
        raise TypeError(f"Index builder {builder!r} is not callable")

    return factory


def builder_options() -> dict:
    """
    Options every builder factory is called with besides the workspace.
    """
    return {"build_tool_identifier": build_tool_identifier}
