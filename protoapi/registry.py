"""
Protocol Registry

Cache of parsed protocol files, keyed by the file name they were
requested with. Entries live until free() is called; later changes to
the files on disk are not noticed.
"""

import logging
import os
import re
from typing import List, Optional, Sequence, Tuple, Union

from protocompiler import (Parser, Protocol, ProtocolFile, FormatConverter,
                           MAX_RECURSION_DEPTH)
from protocompiler.errors import (ProtocolError, ProtocolFileNotFound,
                                  InvalidProtocolFileError)

logger = logging.getLogger(__name__)

SearchPath = Union[str, Sequence[str], None]


def split_path(path: SearchPath) -> List[str]:
    """
    Turn a search path into a list of directories.

    A string is split at os.pathsep and at ';'. No path means the
    current directory.
    """
    if path is None:
        return ['.']
    if isinstance(path, str):
        separators = re.escape(';' + os.pathsep)
        return [d for d in re.split(f'[{separators}]', path) if d] or ['.']
    return [str(d) for d in path] or ['.']


class ProtocolRegistry:
    """
    Parsed protocol files of one host.

    Example:
        with ProtocolRegistry(['/opt/protocols']) as registry:
            protocol = registry.get_protocol('device.proto', 'read(1,2)')
    """

    def __init__(self, path: SearchPath = None,
                 converter: Optional[FormatConverter] = None,
                 max_recursion_depth: int = MAX_RECURSION_DEPTH):
        """
        Initialize the registry.

        Args:
            path: Directories searched for relative file names
            converter: Format converter handed to every parsed file
            max_recursion_depth: Limit for nested variable references
        """
        self.path = split_path(path)
        self.converter = converter
        self.max_recursion_depth = max_recursion_depth
        self.files: List[Tuple[str, ProtocolFile]] = []

    def __repr__(self) -> str:
        return f"ProtocolRegistry(path={self.path!r}, files={len(self.files)})"

    def __enter__(self) -> 'ProtocolRegistry':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.free()

    def __len__(self) -> int:
        return len(self.files)

    def __contains__(self, filename: str) -> bool:
        return self.cached(filename) is not None

    def cached(self, filename: str) -> Optional[ProtocolFile]:
        """
        Look up a parsed file.

        An exact match wins; otherwise the first entry whose name starts
        with the given name.
        """
        for key, protocol_file in self.files:
            if key == filename:
                return protocol_file
        for key, protocol_file in self.files:
            if key.startswith(filename):
                return protocol_file
        return None

    def find_file(self, filename: str) -> str:
        """
        Find a readable file on the search path.

        Raises:
            ProtocolFileNotFound: If no directory holds a readable file
        """
        if os.path.isabs(filename):
            candidates = [filename]
        else:
            candidates = [os.path.join(directory, filename) for directory in self.path]
        for candidate in candidates:
            logger.debug("trying protocol file '%s'", candidate)
            if os.path.isfile(candidate) and os.access(candidate, os.R_OK):
                return candidate
        raise ProtocolFileNotFound(
            f"Can't find readable file '{filename}' in '{os.pathsep.join(self.path)}'")

    def load(self, filename: str) -> ProtocolFile:
        """
        Get a parsed file, parsing it on first use.

        Raises:
            ProtocolFileNotFound: If the file cannot be found
            InvalidProtocolFileError: If the file failed to parse before
            ProtocolError: If the file fails to parse now
        """
        protocol_file = self.cached(filename)
        if protocol_file is not None:
            if not protocol_file.valid:
                raise InvalidProtocolFileError(
                    f"Protocol file '{filename}' is invalid (see above)",
                    filename=protocol_file.filename)
            return protocol_file

        path = self.find_file(filename)
        logger.info("parsing protocol file '%s'", path)
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            source = f.read()
        parser = Parser(source, path, self.converter, self.max_recursion_depth)
        # Cached even when invalid so it is not parsed again
        self.files.append((filename, parser.file))
        try:
            return parser.parse()
        except ProtocolError as e:
            raise e.add_note(f"Protocol file '{filename}' is invalid")

    def get_protocol(self, filename: str, protocol_and_params: str) -> Protocol:
        """
        Instantiate a protocol of a file.

        Args:
            filename: Protocol file, relative to the search path or absolute
            protocol_and_params: "name" or "name(arg1,arg2,...)"

        Returns:
            A new protocol instance owned by the caller
        """
        return self.load(filename).get_protocol(protocol_and_params)

    def free(self) -> None:
        """Drop every parsed file."""
        logger.debug("freeing %d protocol files", len(self.files))
        self.files.clear()
