"""Handler extracting properties every file has."""

from collections.abc import Mapping
from typing import Any, final, override

from server.apps.files.handlers.base import Handler, SourceFile
from server.apps.files.infrastructure.metadata import (
    calculate_checksum,
    detect_mime_type,
)


@final
class PropertiesHandler(Handler):
    """Size, detected mime and checksum of the stored bytes.

    The ``checksum`` option (on unless configured otherwise) may be
    switched off per upload to skip hashing very large files.
    """

    @override
    def extract_basic_properties(self, source: SourceFile) -> Mapping[str, Any]:
        return {
            'size': source.size,
            'mime': detect_mime_type(source.data, source.filename),
            'extension': source.extension,
        }

    @override
    def extract_additional_properties(
        self,
        source: SourceFile,
    ) -> Mapping[str, Any]:
        properties = {'filename': source.filename}
        if self.options.get('checksum', True):
            properties['checksum_sha256'] = calculate_checksum(source.data)
        return properties
