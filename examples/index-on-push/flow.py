from prefect import flow, task

from prefect_soci.deployments.config import IndexerConfig
from prefect_soci.deployments.steps.index import index_and_push
from prefect_soci.index.builder import load_builder_factory


@task
def index_image(image: str, builder: str, index_tag: str | None = None):
    return index_and_push(image, load_builder_factory(builder), config=IndexerConfig(index_tag=index_tag))


@flow
def index_on_push(
    image: str = "123456789012.dkr.ecr.us-east-1.amazonaws.com/app:latest",
    builder: str = "my_builders.soci.factory",
):
    status = index_image(image, builder)
    print(f"Status: {status}")
    return status

if __name__ == "__main__":
    index_on_push()
