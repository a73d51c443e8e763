from oras.schemas import schema_url

descriptorProperties = {
    "mediaType": {"type": "string"},
    "digest": {"type": "string"},
    "size": {"type": "number"},
    "artifactType": {"type": ["null", "string"]},
    "urls": {"type": ["null", "array"], "items": {"type": "string"}},
    "annotations": {"type": ["object", "null"]},
    "platform": {
        "type": ["object", "null"],
        "properties": {
            "architecture": {"type": "string"},
            "os": {"type": "string"},
            "os.version": {"type": "string"},
            "os.features": {"type": "array", "items": {"type": "string"}},
            "variant": {"type": "string"},
            "features": {"type": "array", "items": {"type": "string"}},
        },
    },
}

descriptor = {
    "type": "object",
    "required": [
        "digest",
        "size",
    ],
    "properties": descriptorProperties,
}

# Accepts image manifests, Docker manifest lists and OCI image indexes alike,
# the resolver tells them apart by media type.
manifestEnvelopeProperties = {
    "schemaVersion": {"type": "number"},
    "mediaType": {"type": "string"},
    "artifactType": {"type": ["null", "string"]},
    "config": descriptor,
    "layers": {"type": ["array", "null"], "items": descriptor},
    "manifests": {"type": ["array", "null"], "items": descriptor},
    "subject": {"type": ["null", "object"]},
    "annotations": {"type": ["object", "null"]},
}

manifest_envelope = {
    "$schema": schema_url,
    "title": "Manifest Envelope Schema",
    "type": "object",
    "required": [
        "schemaVersion",
    ],
    "properties": manifestEnvelopeProperties,
    "additionalProperties": True,
}
