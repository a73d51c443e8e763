default_docker_manifest_list_media_type = "application/vnd.docker.distribution.manifest.list.v2+json"
default_docker_manifest_media_type = "application/vnd.docker.distribution.manifest.v2+json"
default_oci_manifest_media_type = "application/vnd.oci.image.manifest.v1+json"
default_image_index_media_type = "application/vnd.oci.image.index.v1+json"

default_docker_image_config_media_type = "application/vnd.docker.container.image.v1+json"
default_oci_image_config_media_type = "application/vnd.oci.image.config.v1+json"

default_soci_index_artifact_type = "application/vnd.amazon.soci.index.v1+json"

# Config media types of runnable images
image_config_media_types = [
    default_docker_image_config_media_type,
    default_oci_image_config_media_type,
]

# Single-platform image manifests
image_manifest_media_types = [
    default_docker_manifest_media_type,
    default_oci_manifest_media_type,
]

# Everything we may ask a registry for when fetching a manifest
accepted_manifest_media_types = [
    default_docker_manifest_list_media_type,
    default_image_index_media_type,
    default_docker_manifest_media_type,
    default_oci_manifest_media_type,
]

default_registry = "docker.io"
default_tag = "latest"

# docker.io is only an alias, the distribution API lives elsewhere
docker_hub_api_host = "registry-1.docker.io"
docker_hub_official_namespace = "library"

user_agent = "prefect-soci (oras-py)"
build_tool_identifier = "github.com/prefect-soci/prefect-soci"

# environment override for a non default ECR endpoint
ecr_endpoint_env = "ECR_ENDPOINT"

default_request_timeout = 300.0
default_chunk_size = 1024 * 1024
