"""Storage formats for secret files.

Each format knows the file extension of the secret file, the type name sops
uses for ``--input-type``/``--output-type``, the content a new secret starts
with in the editor and how decrypted output is pretty-printed.

"""

import json
from typing import Callable, Dict, Optional

import yaml


def pretty_json(content: bytes) -> bytes:
    data = json.loads(content.decode("utf-8"))
    return (json.dumps(data, indent=2, ensure_ascii=False) + "\n").encode(
        "utf-8"
    )


def pretty_yaml(content: bytes) -> bytes:
    data = yaml.safe_load(content.decode("utf-8"))
    return yaml.safe_dump(
        data,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    ).encode("utf-8")


class Format(object):
    def __init__(
        self,
        name: str,
        extension: str,
        sops_type: str,
        template: str = "",
        postprocess: Optional[Callable[[bytes], bytes]] = None,
    ):
        self.name = name
        self.extension = extension
        self.sops_type = sops_type
        self.template = template
        self.postprocess = postprocess

    def __repr__(self):
        return "<Format {}>".format(self.name)

    def pretty(self, content: bytes) -> bytes:
        if self.postprocess is None or not content.strip():
            return content
        return self.postprocess(content)


FORMATS: Dict[str, Format] = {
    "bin": Format("bin", "", "binary"),
    "json": Format(
        "json", ".json", "json", '{"data": ""}\n', postprocess=pretty_json
    ),
    "yaml": Format(
        "yaml", ".yaml", "yaml", "data:\n", postprocess=pretty_yaml
    ),
    "env": Format("env", ".env", "dotenv", "data=\n"),
}

DEFAULT_FORMAT = "bin"


def get_format(name: str) -> Format:
    """Return the format registered as `name`.

    Raises KeyError for unknown names, callers turn that into a
    configuration error.

    """
    return FORMATS[name]
