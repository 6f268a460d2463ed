"""
npyfile - Reader and writer for the NumPy .npy array interchange format

A Python implementation of the .npy container for homogeneous numeric arrays.
A file consists of a fixed prelude (magic string, format version and header
length), a textual header holding a restricted Python dictionary literal, and
the raw contiguous array payload.

Features:
- Strict parser for the header dictionary ('descr', 'fortran_order', 'shape')
- Version 1.0 and 2.0 preludes on load, version 1.0 on save
- Zero-copy loading of files through a private memory map
- Buffered loading from pipes, unmappable files and in-memory buffers
- Byte order normalization of the payload to the host byte order
- Safe for untrusted input: no eval, no pickle, exact size checks

License: MIT
"""

__version__ = "0.1.0"

import io
import logging
import math
import mmap
import os
import struct
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, BinaryIO, Optional, Sequence, Tuple, Union

import numpy as np

logger = logging.getLogger(__name__)


# Grammar of the npy header
# The header text following the prelude is parsed with the recursive-descent
# parser below. Only this subset of Python literal syntax is accepted.

# <header>     ::= "{" <ws>* "}" <ws>* | "{" <ws>* <items> "}" <ws>*
# <items>      ::= <item> <ws>* | <item> <ws>* "," <ws>* | <item> <ws>* "," <ws>* <items>
# <item>       ::= <key> <ws>* ":" <ws>* <value>
# <key>        ::= <quote> ("descr" | "fortran_order" | "shape") <quote>
# <value>      ::= <string> | <tuple> | "True" | "False"
# <string>     ::= "'" <char>* "'" | '"' <char>* '"'
# <tuple>      ::= "(" <ws>* <dims>? ")"
# <dims>       ::= <int> <ws>* | <int> <ws>* "," <ws>* | <int> <ws>* "," <ws>* <dims>
# <int>        ::= <digit> | <digit> <int>
# <descr>      ::= ("<" | ">") ("i" | "u" | "f") ("1" | "2" | "4" | "8")

# Strings have no escape sequences: the first matching quote closes them.
# 'descr' holds a string that must match <descr>, 'shape' holds a tuple and
# 'fortran_order' holds one of the two boolean literals.


MAGIC = b'\x93NUMPY'

# Payload offset (prelude + header) is a multiple of this
HEADER_ALIGNMENT = 16

# Smallest store that can hold a prelude and a minimal header
MIN_FILE_SIZE = 16

DEFAULT_MAX_DIM = 32
DEFAULT_HEADER_CAPACITY = 65536
MIN_HEADER_CAPACITY = 64

WHITESPACE = ' \t\n\r\x0b\x0c'
DIGITS = '0123456789'

# Header length field per major version
_LENGTH_STRUCTS = {
    1: struct.Struct('<H'),
    2: struct.Struct('<I'),
}

_HEADER_KEYS = ('descr', 'fortran_order', 'shape')

_BYTEORDER_CHARS = {'<': True, '>': False}
_WIDTH_CHARS = {'1': 8, '2': 16, '4': 32, '8': 64}

# Unsigned integer views used to reverse element bytes in place
_SWAP_DTYPES = {16: np.uint16, 32: np.uint32, 64: np.uint64}


class NpyError(Exception):
    """Base class for all errors raised by npyfile."""


class FormatError(NpyError, ValueError):
    """The data does not start with a valid npy prelude."""


class UnsupportedVersion(NpyError, ValueError):
    """The prelude declares a format version this module cannot read."""


class HeaderSyntaxError(NpyError, ValueError):
    """The header dictionary, a shape tuple or a string literal is malformed."""

    def __init__(self, message: str, position: Optional[int] = None):
        if position is not None:
            message = f"{message} (at header offset {position})"
        super().__init__(message)
        self.position = position


class UnsupportedDtype(NpyError, TypeError):
    """The dtype descriptor is not one of the supported 3-character codes."""


class AlignmentError(NpyError, ValueError):
    """The payload does not start on a 16-byte boundary."""


class SizeMismatch(NpyError, ValueError):
    """The payload size differs from what the header declares."""


class Truncated(NpyError, EOFError):
    """The byte source ended before the declared data was read."""


class CapacityExceeded(NpyError, OverflowError):
    """A header does not fit the space allowed for it."""


class NpyIOError(NpyError, OSError):
    """Reading from or writing to the underlying byte store failed."""


class OutOfMemory(NpyError, MemoryError):
    """The payload buffer could not be allocated."""


class UnsupportedWidth(NpyError, ValueError):
    """Byte swapping was requested for an unsupported element width."""


def host_is_little_endian() -> bool:
    """Return True if the running interpreter's host is little-endian."""
    return sys.byteorder == 'little'


def max_header_size(max_dim: int = DEFAULT_MAX_DIM) -> int:
    """
    Upper bound accepted for the header length field of a stream of unknown size.

    Each shape entry is assumed to need at most 20 characters on top of a
    generous 1024 bytes for the rest of the dictionary.
    """
    return 1024 + 20 * max_dim


class Kind(Enum):
    """Numeric kind of the array elements, valued by its descriptor character."""
    SIGNED = 'i'
    UNSIGNED = 'u'
    FLOAT = 'f'


@dataclass(frozen=True)
class DType:
    """
    Decoded form of a 3-character dtype descriptor such as '<f4'.

    Attributes:
        little_endian: Byte order of multi-byte elements
        kind: Signed integer, unsigned integer or floating point
        bit_width: Element width in bits (8, 16, 32 or 64)
    """
    little_endian: bool
    kind: Kind
    bit_width: int

    @property
    def is_signed(self) -> bool:
        # floats count as signed
        return self.kind is not Kind.UNSIGNED

    @property
    def floating_point(self) -> bool:
        return self.kind is Kind.FLOAT

    @property
    def itemsize(self) -> int:
        return self.bit_width // 8

    @property
    def descr(self) -> str:
        return serialize_dtype(self)

    def with_byteorder(self, little_endian: bool) -> 'DType':
        return replace(self, little_endian=little_endian)

    def to_numpy(self) -> np.dtype:
        """
        Return the equivalent NumPy dtype.

        Raises:
            UnsupportedDtype: If NumPy has no such type (e.g. an 8-bit float)
        """
        try:
            return np.dtype(self.descr)
        except TypeError as e:
            raise UnsupportedDtype(f"NumPy has no dtype for {self.descr!r}") from e

    @classmethod
    def from_numpy(cls, dtype: Any) -> 'DType':
        """
        Build a DType from anything accepted by numpy.dtype().

        Native ('=') and not-applicable ('|') byte orders map to the host order.

        Raises:
            UnsupportedDtype: For anything but 1, 2, 4 or 8 byte integers and floats
        """
        dtype = np.dtype(dtype)
        if dtype.kind not in 'iuf' or dtype.itemsize not in (1, 2, 4, 8):
            raise UnsupportedDtype(f"Unsupported NumPy dtype: {dtype}")
        if dtype.byteorder in '=|':
            little_endian = host_is_little_endian()
        else:
            little_endian = dtype.byteorder == '<'
        return cls(little_endian, Kind(dtype.kind), dtype.itemsize * 8)


def parse_dtype(descr: str) -> DType:
    """
    Decode a 3-character dtype descriptor.

    The first character is the byte order ('<' or '>'), the second the kind
    ('i', 'u' or 'f') and the third the element size in bytes ('1', '2', '4'
    or '8'). Combinations such as '<f1' are accepted as they are.

    Args:
        descr: The descriptor string from the header

    Returns:
        DType: The decoded descriptor

    Raises:
        UnsupportedDtype: If the descriptor does not follow the rules above
    """
    if not isinstance(descr, str) or len(descr) != 3:
        raise UnsupportedDtype(f"Unsupported dtype descriptor: {descr!r}")

    order_char, kind_char, width_char = descr
    if order_char not in _BYTEORDER_CHARS:
        raise UnsupportedDtype(f"Unsupported byte order {order_char!r} in dtype {descr!r}")
    if kind_char not in ('i', 'u', 'f'):
        raise UnsupportedDtype(f"Unsupported kind {kind_char!r} in dtype {descr!r}")
    if width_char not in _WIDTH_CHARS:
        raise UnsupportedDtype(f"Unsupported width {width_char!r} in dtype {descr!r}")

    return DType(_BYTEORDER_CHARS[order_char], Kind(kind_char), _WIDTH_CHARS[width_char])


def serialize_dtype(dtype: DType) -> str:
    """Encode a DType as its 3-character descriptor."""
    if dtype.bit_width not in _WIDTH_CHARS.values():
        raise UnsupportedDtype(f"Unsupported bit width: {dtype.bit_width}")
    order_char = '<' if dtype.little_endian else '>'
    return f"{order_char}{dtype.kind.value}{dtype.bit_width // 8}"


def _describe(char: str) -> str:
    return repr(char) if char else 'end of header'


class _HeaderParser:
    """
    Recursive-descent parser over the header text.

    Each parse_* method consumes one construct of the grammar starting at
    the current position and leaves the position right after it. Errors
    report the offset of the offending character.
    """

    def __init__(self, text: str, pos: int = 0):
        self.text = text
        self.pos = pos

    def peek(self) -> str:
        if self.pos < len(self.text):
            return self.text[self.pos]
        return ''

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def skip_spaces(self):
        text = self.text
        while self.pos < len(text) and text[self.pos] in WHITESPACE:
            self.pos += 1

    def expect(self, char: str, what: str):
        found = self.peek()
        if found != char:
            raise HeaderSyntaxError(f"Expected {what}, found {_describe(found)}", self.pos)
        self.pos += 1

    def parse_int(self) -> int:
        text = self.text
        start = self.pos
        while self.pos < len(text) and text[self.pos] in DIGITS:
            self.pos += 1
        if self.pos == start:
            raise HeaderSyntaxError(f"Expected an integer, found {_describe(self.peek())}", start)
        return int(text[start:self.pos])

    def parse_string(self) -> str:
        start = self.pos
        quote = self.peek()
        if quote not in ("'", '"'):
            raise HeaderSyntaxError(f"Expected a quoted string, found {_describe(quote)}", start)
        end = self.text.find(quote, start + 1)
        if end < 0:
            raise HeaderSyntaxError("Unterminated string", start)
        self.pos = end + 1
        return self.text[start + 1:end]

    def parse_bool(self) -> bool:
        for literal, value in (('True', True), ('False', False)):
            if self.text.startswith(literal, self.pos):
                self.pos += len(literal)
                return value
        raise HeaderSyntaxError(f"Expected True or False, found {_describe(self.peek())}", self.pos)

    def parse_shape(self) -> Tuple[int, ...]:
        self.expect('(', "'(' to open the shape tuple")
        dims = []
        self.skip_spaces()
        while self.peek() != ')':
            dims.append(self.parse_int())
            self.skip_spaces()
            if self.peek() == ',':
                self.pos += 1
                self.skip_spaces()
            elif self.peek() != ')':
                raise HeaderSyntaxError(
                    f"Expected ',' or ')' in shape tuple, found {_describe(self.peek())}", self.pos)
        self.pos += 1
        return tuple(dims)

    def parse_key(self) -> str:
        start = self.pos
        key = self.parse_string()
        if key not in _HEADER_KEYS:
            raise HeaderSyntaxError(f"Unexpected key in header: {key!r}", start)
        return key

    def parse_dict(self) -> dict:
        """
        Parse the whole header dictionary.

        Returns:
            dict: The raw values by key, in the order they were seen. A key
                  that occurs more than once keeps its last value.
        """
        entries = {}
        self.expect('{', "'{' at the start of the header")
        self.skip_spaces()
        while self.peek() != '}':
            key = self.parse_key()
            self.skip_spaces()
            self.expect(':', "':' after key")
            self.skip_spaces()

            if key == 'descr':
                entries[key] = self.parse_string()
            elif key == 'shape':
                entries[key] = self.parse_shape()
            else:
                entries[key] = self.parse_bool()

            self.skip_spaces()
            if self.peek() == ',':
                self.pos += 1
                self.skip_spaces()
            elif self.peek() != '}':
                raise HeaderSyntaxError(f"Expected ',' or '}}', found {_describe(self.peek())}", self.pos)
        self.pos += 1

        # Only padding may follow the dictionary
        self.skip_spaces()
        if not self.at_end():
            raise HeaderSyntaxError(f"Unexpected {_describe(self.peek())} after header dictionary", self.pos)
        return entries


def parse_shape(text: str, pos: int = 0) -> Tuple[Tuple[int, ...], int]:
    """
    Parse a shape tuple literal such as '(2, 3)', '(5,)' or '()'.

    Args:
        text: Text containing the tuple
        pos: Position of the opening parenthesis

    Returns:
        Tuple[Tuple[int, ...], int]: The dimensions and the position just
                                     after the closing parenthesis

    Raises:
        HeaderSyntaxError: If the text at pos is not a tuple of unsigned integers
    """
    parser = _HeaderParser(text, pos)
    shape = parser.parse_shape()
    return shape, parser.pos


def serialize_shape(shape: Sequence[int]) -> str:
    """Format a shape as '(d0, d1, )'; the trailing comma keeps 1-tuples unambiguous."""
    return '(' + ''.join(f"{int(d)}, " for d in shape) + ')'


def parse_header_dict(text: str, descriptor: Optional['ArrayDescriptor'] = None) -> 'ArrayDescriptor':
    """
    Parse the header dictionary and store its fields in a descriptor.

    'shape' and 'fortran_order' are optional and keep the descriptor's
    current values when absent. 'descr' is required. The descriptor is only
    modified once the whole header, dtype included, is known to be valid.

    Args:
        text: The header text following the prelude (padding included)
        descriptor: Descriptor to populate, a new one if not given

    Returns:
        ArrayDescriptor: The populated descriptor

    Raises:
        HeaderSyntaxError: If the dictionary is malformed or has an unknown key
        UnsupportedDtype: If 'descr' is missing or not supported
    """
    if descriptor is None:
        descriptor = ArrayDescriptor()

    entries = _HeaderParser(text).parse_dict()
    if 'descr' not in entries:
        raise UnsupportedDtype("Header does not define 'descr'")
    dtype = parse_dtype(entries['descr'])

    descriptor.dtype = dtype
    descriptor.shape = entries.get('shape', descriptor.shape)
    descriptor.fortran_order = entries.get('fortran_order', descriptor.fortran_order)
    return descriptor


def serialize_header_dict(descriptor: 'ArrayDescriptor', capacity: int = DEFAULT_HEADER_CAPACITY) -> str:
    """
    Format the header dictionary of a descriptor for a version 1.0 file.

    The dictionary is padded with spaces and terminated by a newline so that
    prelude and header together end on a 16-byte boundary.

    Args:
        descriptor: The descriptor to describe
        capacity: Space available for prelude and header together

    Returns:
        str: The padded header text

    Raises:
        CapacityExceeded: If the padded header does not fit in capacity bytes
    """
    if capacity < MIN_HEADER_CAPACITY:
        raise CapacityExceeded(f"Header capacity must be at least {MIN_HEADER_CAPACITY} bytes, got {capacity}")

    body = "{'descr': '%s', 'fortran_order': %s, 'shape': %s, }" % (
        descriptor.dtype.descr,
        'True' if descriptor.fortran_order else 'False',
        serialize_shape(descriptor.shape),
    )

    prelude_len = prelude_size(1)
    padding = -(prelude_len + len(body) + 1) % HEADER_ALIGNMENT
    text = body + ' ' * padding + '\n'

    if prelude_len + len(text) > capacity:
        raise CapacityExceeded(
            f"Header of {prelude_len + len(text)} bytes exceeds the capacity of {capacity} bytes")
    return text


def serialize_header(descriptor: 'ArrayDescriptor', capacity: int = DEFAULT_HEADER_CAPACITY) -> bytes:
    """Return prelude and padded header of a descriptor, ready to be written."""
    text = serialize_header_dict(descriptor, capacity)
    return serialize_prelude(len(text)) + text.encode('ascii')


def prelude_size(major_version: int) -> int:
    """Size in bytes of the prelude for a given major format version."""
    length_struct = _LENGTH_STRUCTS.get(major_version)
    if length_struct is None:
        raise UnsupportedVersion(f"Unsupported format version: {major_version}")
    return len(MAGIC) + 2 + length_struct.size


def _parse_version(data: bytes) -> Tuple[int, int]:
    if len(data) < len(MAGIC) or data[:len(MAGIC)] != MAGIC:
        raise FormatError("Missing npy magic string")
    if len(data) < len(MAGIC) + 2:
        raise FormatError("Truncated prelude: missing format version")
    major, minor = data[len(MAGIC)], data[len(MAGIC) + 1]
    if major not in _LENGTH_STRUCTS:
        raise UnsupportedVersion(f"Unsupported format version: {major}.{minor}")
    return major, minor


def parse_prelude(data: bytes) -> Tuple[int, int, int, int]:
    """
    Parse the magic string, format version and header length.

    Version 1 stores the header length as a little-endian uint16, version 2
    as a little-endian uint32.

    Args:
        data: Bytes starting at the beginning of the file

    Returns:
        Tuple[int, int, int, int]: (major, minor, header_length, bytes_consumed)

    Raises:
        FormatError: If the magic string is wrong or the prelude is cut short
        UnsupportedVersion: If the major version is neither 1 nor 2
    """
    data = bytes(data[:len(MAGIC) + 2 + 4])
    major, minor = _parse_version(data)
    length_struct = _LENGTH_STRUCTS[major]
    consumed = len(MAGIC) + 2 + length_struct.size
    if len(data) < consumed:
        raise FormatError("Truncated prelude: missing header length")
    header_length, = length_struct.unpack_from(data, len(MAGIC) + 2)
    return major, minor, header_length, consumed


def serialize_prelude(header_length: int) -> bytes:
    """Return a version 1.0 prelude for a header of the given length."""
    if header_length > 0xFFFF:
        raise CapacityExceeded(f"Header length {header_length} does not fit a version 1.0 prelude")
    return MAGIC + bytes((1, 0)) + _LENGTH_STRUCTS[1].pack(header_length)


def normalize(element_count: int, bit_width: int, buffer: Any):
    """
    Reverse the byte order of each element of a buffer in place.

    Args:
        element_count: Number of elements to swap
        bit_width: Width of each element in bits
        buffer: Writable buffer holding at least element_count elements

    Raises:
        UnsupportedWidth: If bit_width is not 8, 16, 32 or 64
    """
    if bit_width == 8:
        return
    if bit_width not in _SWAP_DTYPES:
        raise UnsupportedWidth(f"Cannot swap bytes of {bit_width}-bit elements")
    if element_count == 0:
        return
    elements = np.frombuffer(buffer, dtype=_SWAP_DTYPES[bit_width], count=element_count)
    elements.byteswap(inplace=True)


class ByteSource(ABC):
    """Provider of the stored bytes of an array."""

    @abstractmethod
    def size(self) -> Optional[int]:
        """Total size in bytes, or None if the source cannot tell."""

    @abstractmethod
    def read_range(self, offset: int, length: int) -> bytes:
        """Read up to length bytes at offset. Fewer bytes mean the data ended."""

    def read_into(self, offset: int, buffer: Any) -> int:
        """Fill a writable buffer with the bytes at offset and return how many were read."""
        view = memoryview(buffer).cast('B')
        data = self.read_range(offset, view.nbytes)
        view[:len(data)] = data
        return len(data)

    def map_if_possible(self) -> Optional[mmap.mmap]:
        """Map the whole store privately into memory, or return None."""
        return None

    def close(self):
        pass


class MemorySource(ByteSource):
    """Byte source over an in-memory bytes-like object."""

    def __init__(self, data: Any):
        self._view = memoryview(data).cast('B')

    def __repr__(self):
        return f"MemorySource({self._view.nbytes} bytes)"

    def size(self) -> int:
        return self._view.nbytes

    def read_range(self, offset: int, length: int) -> bytes:
        return bytes(self._view[offset:offset + length])

    def read_into(self, offset: int, buffer: Any) -> int:
        view = memoryview(buffer).cast('B')
        chunk = self._view[offset:offset + view.nbytes]
        view[:chunk.nbytes] = chunk
        return chunk.nbytes

    def close(self):
        self._view.release()


class FileSource(ByteSource):
    """
    Byte source over a binary file object.

    Seekable files support random access and memory mapping. Pipes and other
    non-seekable streams are read strictly front to back.
    """

    def __init__(self, file: BinaryIO, owns_file: bool = False):
        self.file = file
        self.owns_file = owns_file
        try:
            self.seekable = file.seekable()
        except (AttributeError, ValueError):
            self.seekable = False
        self._position = 0

    @classmethod
    def open(cls, filename: Union[str, os.PathLike]) -> 'FileSource':
        return cls(open(filename, 'rb'), owns_file=True)

    def __repr__(self):
        return f"FileSource({getattr(self.file, 'name', self.file)!r})"

    def size(self) -> Optional[int]:
        if not self.seekable:
            return None
        try:
            return self.file.seek(0, io.SEEK_END)
        except OSError as e:
            raise NpyIOError(f"Cannot determine size of {self!r}: {e}") from e

    def _seek(self, offset: int):
        if self.seekable:
            self.file.seek(offset)
        elif offset != self._position:
            if offset < self._position:
                raise NpyIOError(f"Cannot read backwards in non-seekable {self!r}")
            self._read(offset - self._position)

    def read_range(self, offset: int, length: int) -> bytes:
        try:
            self._seek(offset)
            return self._read(length)
        except NpyIOError:
            raise
        except OSError as e:
            raise NpyIOError(f"Read from {self!r} failed: {e}") from e

    def read_into(self, offset: int, buffer: Any) -> int:
        readinto = getattr(self.file, 'readinto', None)
        if readinto is None:
            return super().read_into(offset, buffer)

        view = memoryview(buffer).cast('B')
        filled = 0
        try:
            self._seek(offset)
            while filled < view.nbytes:
                count = readinto(view[filled:])
                if not count:
                    break
                filled += count
        except NpyIOError:
            raise
        except OSError as e:
            raise NpyIOError(f"Read from {self!r} failed: {e}") from e
        finally:
            self._position += filled
        return filled

    def _read(self, length: int) -> bytes:
        chunks = []
        remaining = length
        while remaining > 0:
            chunk = self.file.read(remaining)
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        data = b''.join(chunks)
        self._position += len(data)
        return data

    def map_if_possible(self) -> Optional[mmap.mmap]:
        if not self.seekable:
            return None
        try:
            fileno = self.file.fileno()
        except (AttributeError, OSError):
            # in-memory file objects such as io.BytesIO
            return None

        if self.size() == 0:
            return None

        try:
            return mmap.mmap(fileno, 0, access=mmap.ACCESS_COPY)
        except (OSError, ValueError) as e:
            logger.warning("Could not map %r, falling back to buffered reads: %s", self, e)
            return None

    def close(self):
        if self.owns_file and not self.file.closed:
            self.file.close()


class ByteSink(ABC):
    """Destination for a serialized array."""

    @abstractmethod
    def write(self, data: Any) -> int:
        """Write data and return the number of bytes accepted."""

    def close(self):
        pass


class FileSink(ByteSink):
    """Byte sink over a binary file object."""

    def __init__(self, file: BinaryIO, owns_file: bool = False):
        self.file = file
        self.owns_file = owns_file

    @classmethod
    def open(cls, filename: Union[str, os.PathLike]) -> 'FileSink':
        return cls(open(filename, 'wb'), owns_file=True)

    def write(self, data: Any) -> int:
        try:
            written = self.file.write(data)
        except OSError as e:
            raise NpyIOError(f"Write to {getattr(self.file, 'name', self.file)!r} failed: {e}") from e
        # non-blocking raw files return None when nothing could be written
        return 0 if written is None else written

    def close(self):
        if self.owns_file and not self.file.closed:
            self.file.close()


class BufferSink(ByteSink):
    """Byte sink collecting the output in a bytearray."""

    def __init__(self, buffer: Optional[bytearray] = None):
        self.buffer = bytearray() if buffer is None else buffer

    def write(self, data: Any) -> int:
        view = memoryview(data)
        self.buffer += view
        return view.nbytes

    def getvalue(self) -> bytes:
        return bytes(self.buffer)


class Ownership(Enum):
    """Who owns the payload memory, and therefore how it is released."""
    MAPPED = 'mapped'        # view into a private memory map held by the descriptor
    OWNED = 'owned'          # buffer allocated while loading
    EXTERNAL = 'external'    # supplied by the caller, never released here


class Transport(ABC):
    """
    Strategy for reading the header bytes and acquiring the payload.

    Both implementations produce the same logical result; they differ in
    whether the payload aliases a memory map or is copied into a buffer.
    """

    ownership = Ownership.OWNED

    @abstractmethod
    def size(self) -> Optional[int]: ...

    @abstractmethod
    def read_range(self, offset: int, length: int) -> bytes: ...

    @abstractmethod
    def acquire_payload(self, offset: int, nbytes: int) -> memoryview:
        """Return a writable byte view of exactly nbytes payload bytes at offset."""

    def release(self):
        pass


class MappedTransport(Transport):
    """Payload access through a private (copy-on-write) memory map of the whole store."""

    ownership = Ownership.MAPPED

    def __init__(self, mapping: mmap.mmap):
        self.mapping = mapping

    def size(self) -> int:
        return len(self.mapping)

    def read_range(self, offset: int, length: int) -> bytes:
        return self.mapping[offset:offset + length]

    def acquire_payload(self, offset: int, nbytes: int) -> memoryview:
        total = len(self.mapping)
        if offset + nbytes != total:
            raise SizeMismatch(
                f"Header declares {nbytes} payload bytes at offset {offset}, "
                f"but the mapped store holds {total - offset}")
        return memoryview(self.mapping)[offset:offset + nbytes]

    def release(self):
        if not self.mapping.closed:
            self.mapping.close()


class BufferedTransport(Transport):
    """Payload access by sequential reads into a newly allocated buffer."""

    ownership = Ownership.OWNED

    def __init__(self, source: ByteSource):
        self.source = source

    def size(self) -> Optional[int]:
        return self.source.size()

    def read_range(self, offset: int, length: int) -> bytes:
        return self.source.read_range(offset, length)

    def acquire_payload(self, offset: int, nbytes: int) -> memoryview:
        total = self.source.size()
        if total is not None and offset + nbytes != total:
            raise SizeMismatch(
                f"Header declares {nbytes} payload bytes at offset {offset}, "
                f"but the source holds {total - offset}")

        try:
            buffer = bytearray(nbytes)
        except (MemoryError, OverflowError) as e:
            raise OutOfMemory(f"Cannot allocate {nbytes} bytes for the payload") from e

        received = self.source.read_into(offset, buffer)
        if received != nbytes:
            raise Truncated(f"Expected {nbytes} payload bytes, got {received}")
        return memoryview(buffer)


def select_transport(source: ByteSource, use_mmap: bool = True) -> Transport:
    """
    Choose the payload transport for a byte source.

    The source is probed for a memory mapping; the buffered strategy is used
    when it cannot provide one or when use_mmap is False.
    """
    mapping = source.map_if_possible() if use_mmap else None
    if mapping is not None:
        logger.debug("Mapped %r (%d bytes)", source, len(mapping))
        return MappedTransport(mapping)
    logger.debug("Using buffered reads for %r", source)
    return BufferedTransport(source)


class ArrayDescriptor:
    """
    An array read from, or to be written to, an npy file.

    For writing, construct the descriptor directly with shape, dtype and
    payload. The payload then stays owned by the caller. Descriptors
    returned by load() own their payload and should be closed, or used as a
    context manager, to release it.

    Attributes:
        major_version, minor_version: Format version of a loaded file
        header_length: Length of the header text including padding and newline
        dtype: The element type (DType)
        shape: Tuple of dimensions; () denotes a scalar
        fortran_order: Whether the payload is in column-major order. Recorded
                       and written back, never used to reorder bytes.
        payload: Byte view of the array data, or None
        ownership: Ownership of the payload
    """

    def __init__(self, shape: Sequence[int] = (), dtype: Union[DType, str, None] = None,
                 fortran_order: bool = False, payload: Any = None):
        self.major_version = 1
        self.minor_version = 0
        self.header_length = 0
        self.dtype = dtype
        self.shape = shape
        self.fortran_order = bool(fortran_order)

        self._payload = None
        self.ownership = Ownership.EXTERNAL
        self._transport = None
        self._source = None
        self.closed = False

        if payload is not None:
            self.payload = payload

    def __repr__(self):
        return (f"ArrayDescriptor(shape={self.shape}, dtype={self.dtype.descr!r}, "
                f"fortran_order={self.fortran_order}, ownership={self.ownership.value})")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def dtype(self) -> DType:
        return self._dtype

    @dtype.setter
    def dtype(self, value: Union[DType, str, None]):
        if value is None:
            value = DType(host_is_little_endian(), Kind.FLOAT, 32)
        elif isinstance(value, str):
            value = parse_dtype(value)
        elif not isinstance(value, DType):
            raise TypeError(f"dtype must be a DType or a descriptor string, got {type(value)}")
        self._dtype = value

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._shape

    @shape.setter
    def shape(self, value: Sequence[int]):
        shape = tuple(int(d) for d in value)
        if any(d < 0 for d in shape):
            raise ValueError(f"Negative dimension in shape {shape}")
        self._shape = shape

    @property
    def dim(self) -> int:
        return len(self._shape)

    @property
    def element_count(self) -> int:
        return math.prod(self._shape)

    @property
    def nbytes(self) -> int:
        return self.element_count * self._dtype.bit_width // 8

    @property
    def payload(self) -> Optional[memoryview]:
        return self._payload

    @payload.setter
    def payload(self, value: Any):
        self._release_payload()
        if value is not None:
            view = memoryview(value)
            if view.ndim != 1 or view.format != 'B':
                view = view.cast('B')
            self._payload = view

    def _attach(self, transport: Transport, source: ByteSource):
        self._transport = transport
        self._source = source

    def _set_loaded_payload(self, view: memoryview, ownership: Ownership):
        self._release_payload()
        self._payload = view
        self.ownership = ownership

    def _release_payload(self):
        payload, self._payload = self._payload, None
        if payload is not None and self.ownership is not Ownership.EXTERNAL:
            try:
                payload.release()
            except BufferError:
                # arrays from to_numpy() still reference the payload
                self._payload = payload
                raise
        self.ownership = Ownership.EXTERNAL

    def close(self):
        """
        Release the payload and any memory map or file held for it.

        Calling close() again has no effect. Arrays obtained through
        to_numpy() without copying must be deleted first, otherwise
        BufferError is raised and the descriptor stays open.
        """
        if self.closed:
            return
        self._release_payload()

        transport, self._transport = self._transport, None
        source, self._source = self._source, None
        self.closed = True
        try:
            if transport is not None:
                transport.release()
        finally:
            if source is not None:
                source.close()

    def to_numpy(self, copy: bool = False) -> np.ndarray:
        """
        Return the payload as a NumPy array.

        Args:
            copy: If False, the array is a view of the payload and shares its
                  memory. Fortran-ordered data is interpreted as such; no
                  bytes are moved.

        Returns:
            np.ndarray: The array with the descriptor's shape and dtype
        """
        if self._payload is None:
            raise ValueError("Descriptor has no payload")
        order = 'F' if self.fortran_order else 'C'
        # frombuffer keeps the payload exported for as long as the array lives
        array = np.frombuffer(self._payload, dtype=self._dtype.to_numpy(), count=self.element_count)
        array = array.reshape(self._shape, order=order)
        if copy:
            return array.copy(order='K')
        return array

    @classmethod
    def from_numpy(cls, array: Any) -> 'ArrayDescriptor':
        """
        Describe a NumPy array for writing, borrowing its memory.

        Column-major arrays are stored with fortran_order set; arrays that
        are neither C- nor Fortran-contiguous are copied first.
        """
        array = np.asarray(array)
        dtype = DType.from_numpy(array.dtype)

        fortran_order = bool(array.flags.f_contiguous and not array.flags.c_contiguous)
        if fortran_order:
            flat = array.T
        elif array.flags.c_contiguous:
            flat = array
        else:
            flat = np.ascontiguousarray(array)

        return cls(shape=array.shape, dtype=dtype, fortran_order=fortran_order,
                   payload=flat.reshape(-1).view(np.uint8))


def _as_source(source: Any) -> ByteSource:
    if isinstance(source, ByteSource):
        return source
    if isinstance(source, (str, os.PathLike)):
        return FileSource.open(source)
    if isinstance(source, (bytes, bytearray, memoryview)):
        return MemorySource(source)
    if hasattr(source, 'read'):
        return FileSource(source)
    raise TypeError(f"Unsupported source type: {type(source)}")


def _as_sink(target: Any) -> ByteSink:
    if isinstance(target, ByteSink):
        return target
    if isinstance(target, (str, os.PathLike)):
        return FileSink.open(target)
    if isinstance(target, bytearray):
        return BufferSink(target)
    if hasattr(target, 'write'):
        return FileSink(target)
    raise TypeError(f"Unsupported target type: {type(target)}")


class NpyReader:
    """
    Two-phase loader for npy data: header first, payload on demand.

    Args:
        source: A path, a binary file object, a bytes-like object or a ByteSource
        max_dim: Dimension bound limiting the header length read from streams of unknown size
        use_mmap: Map seekable files into memory instead of reading them
    """

    def __init__(self, source: Any, max_dim: int = DEFAULT_MAX_DIM, use_mmap: bool = True):
        self.source = _as_source(source)
        self.max_dim = max_dim
        self.use_mmap = use_mmap
        self.descriptor = None
        self._transport = None

    def read_header(self) -> ArrayDescriptor:
        """
        Read prelude and header into a new descriptor without its payload.

        Returns:
            ArrayDescriptor: The descriptor; close it when done

        Raises:
            FormatError, UnsupportedVersion, HeaderSyntaxError, UnsupportedDtype,
            CapacityExceeded, Truncated, NpyIOError
        """
        if self.descriptor is not None:
            return self.descriptor

        descriptor = ArrayDescriptor()
        try:
            transport = select_transport(self.source, self.use_mmap)
            descriptor._attach(transport, self.source)
            if isinstance(transport, MappedTransport):
                # the map stays valid without the file
                self.source.close()
            self._read_header_into(transport, descriptor)
        except Exception:
            descriptor.close()
            raise

        self._transport = transport
        self.descriptor = descriptor
        return descriptor

    def _read_header_into(self, transport: Transport, descriptor: ArrayDescriptor):
        total = transport.size()
        if total is not None and total < MIN_FILE_SIZE:
            raise FormatError(f"{total} bytes are too few for an npy file")

        version_len = len(MAGIC) + 2
        prelude = transport.read_range(0, version_len)
        major, _ = _parse_version(prelude)
        consumed = prelude_size(major)
        prelude += transport.read_range(version_len, consumed - version_len)
        major, minor, header_length, consumed = parse_prelude(prelude)

        # a store of known size bounds the header itself; streams need a limit
        if total is None:
            limit = max_header_size(self.max_dim)
            if header_length > limit:
                raise CapacityExceeded(f"Header length {header_length} exceeds the limit of {limit} bytes")

        raw = transport.read_range(consumed, header_length)
        if len(raw) != header_length:
            raise Truncated(f"Expected {header_length} header bytes, got {len(raw)}")
        try:
            text = raw.decode('ascii')
        except UnicodeDecodeError as e:
            raise HeaderSyntaxError("Header is not ASCII text", e.start) from e

        descriptor.major_version = major
        descriptor.minor_version = minor
        descriptor.header_length = header_length
        parse_header_dict(text, descriptor)
        logger.debug("Read npy %d.%d header: dtype=%s shape=%s fortran_order=%s",
                     major, minor, descriptor.dtype.descr, descriptor.shape, descriptor.fortran_order)

    def read_data(self, swap_bytes: bool = True) -> ArrayDescriptor:
        """
        Acquire the payload, reading the header first if needed.

        Args:
            swap_bytes: Convert the payload to the host byte order. The
                        descriptor's dtype is updated to match.

        Returns:
            ArrayDescriptor: The descriptor with its payload

        Raises:
            AlignmentError: If the payload offset is not a multiple of 16
            SizeMismatch: If the store does not hold exactly the declared payload
            Truncated: If a stream ends before the payload is complete
            OutOfMemory: If the payload buffer cannot be allocated
        """
        descriptor = self.read_header()
        if descriptor.payload is not None:
            return descriptor

        try:
            offset = prelude_size(descriptor.major_version) + descriptor.header_length
            if offset % HEADER_ALIGNMENT:
                raise AlignmentError(f"Payload offset {offset} is not a multiple of {HEADER_ALIGNMENT}")

            transport = self._transport
            view = transport.acquire_payload(offset, descriptor.nbytes)
            descriptor._set_loaded_payload(view, transport.ownership)

            host_little = host_is_little_endian()
            if swap_bytes and descriptor.dtype.little_endian != host_little:
                normalize(descriptor.element_count, descriptor.dtype.bit_width, view)
                descriptor.dtype = descriptor.dtype.with_byteorder(host_little)
                logger.debug("Swapped %d elements to host byte order", descriptor.element_count)

            if isinstance(transport, BufferedTransport):
                # payload is copied, the source is no longer needed
                self.source.close()
        except Exception:
            descriptor.close()
            raise
        return descriptor


def load(source: Any, max_dim: int = DEFAULT_MAX_DIM, swap_bytes: bool = True,
         use_mmap: bool = True) -> ArrayDescriptor:
    """
    Load an npy array.

    Args:
        source: A path, a binary file object, a bytes-like object or a ByteSource
        max_dim: Dimension bound limiting the header length read from streams of unknown size
        swap_bytes: Convert the payload to the host byte order
        use_mmap: Map seekable files into memory instead of reading them

    Returns:
        ArrayDescriptor: The loaded array; close it to release the payload
    """
    reader = NpyReader(source, max_dim=max_dim, use_mmap=use_mmap)
    return reader.read_data(swap_bytes=swap_bytes)


def write_descriptor(sink: ByteSink, descriptor: ArrayDescriptor, capacity: int = DEFAULT_HEADER_CAPACITY) -> int:
    """
    Write a descriptor to a byte sink as a version 1.0 npy file.

    The payload is written as it is; the header records the descriptor's
    byte order. Header and payload are each written with a single call.

    Returns:
        int: Number of bytes written

    Raises:
        CapacityExceeded: If the header does not fit in capacity bytes
        SizeMismatch: If the payload length does not match shape and dtype
        NpyIOError: If the sink accepts fewer bytes than given
    """
    header = serialize_header(descriptor, capacity)

    payload = descriptor.payload
    payload_len = 0 if payload is None else payload.nbytes
    if payload_len != descriptor.nbytes:
        raise SizeMismatch(f"Payload has {payload_len} bytes, shape and dtype require {descriptor.nbytes}")

    written = sink.write(header)
    if written != len(header):
        raise NpyIOError(f"Short write of header: {written} of {len(header)} bytes")

    written = sink.write(payload if payload is not None else b'')
    if written != payload_len:
        raise NpyIOError(f"Short write of payload: {written} of {payload_len} bytes")

    logger.debug("Wrote npy header of %d bytes and payload of %d bytes", len(header), payload_len)
    return len(header) + payload_len


def save(target: Any, descriptor: Union[ArrayDescriptor, np.ndarray],
         capacity: int = DEFAULT_HEADER_CAPACITY) -> int:
    """
    Save an array to a path, a binary file object, a bytearray or a ByteSink.

    Args:
        target: Where to write
        descriptor: An ArrayDescriptor, or a NumPy array to describe

    Returns:
        int: Number of bytes written
    """
    if not isinstance(descriptor, ArrayDescriptor):
        descriptor = ArrayDescriptor.from_numpy(descriptor)
    sink = _as_sink(target)
    try:
        return write_descriptor(sink, descriptor, capacity)
    finally:
        sink.close()


class File:
    """
    A class for reading and writing arrays in npy files.

    Usage:
        with npyfile.File('data.npy', 'w') as nf:
            nf.write(np.arange(6, dtype=np.int32).reshape(2, 3))

        with npyfile.File('data.npy', 'r') as nf:
            with nf.read() as descriptor:
                values = descriptor.to_numpy(copy=True)
    """

    def __init__(self, filename: Union[str, os.PathLike], mode: str = 'r', max_dim: int = DEFAULT_MAX_DIM,
                 use_mmap: bool = True, swap_bytes: bool = True):
        """
        Initialize an npyfile.File object.

        Args:
            filename: Path to the file
            mode: File mode ('w' for write, 'r' for read)
            max_dim: Dimension bound limiting the header length read from streams of unknown size
            use_mmap: Map the file into memory instead of reading it
            swap_bytes: Convert loaded payloads to the host byte order
        """
        self.filename = filename
        self.mode = mode
        self.max_dim = max_dim
        self.use_mmap = use_mmap
        self.swap_bytes = swap_bytes
        self.file = None
        self.written = False

    def __enter__(self):
        """Context manager entry point."""
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit point."""
        self.close()

    def open(self):
        """Open the file for reading or writing."""
        if self.mode == 'w':
            self.file = open(self.filename, 'wb')
            self.written = False
        elif self.mode == 'r':
            self.file = open(self.filename, 'rb')
        else:
            raise ValueError(f"Unsupported mode: {self.mode}")

    def close(self):
        """Close the file. Descriptors already read stay valid."""
        if self.file and not self.file.closed:
            self.file.close()

    def _check_open(self, mode: str):
        if not self.file or self.file.closed:
            raise IOError(f"File is not open for {'reading' if mode == 'r' else 'writing'}")
        if self.mode != mode:
            raise IOError(f"File is not open in {'read' if mode == 'r' else 'write'} mode")

    def read_header(self) -> ArrayDescriptor:
        """Read only the header of the file."""
        self._check_open('r')
        reader = NpyReader(FileSource(self.file), max_dim=self.max_dim, use_mmap=self.use_mmap)
        return reader.read_header()

    def read(self) -> ArrayDescriptor:
        """
        Read the array stored in the file.

        Returns:
            ArrayDescriptor: The loaded array; close it to release the payload
        """
        self._check_open('r')
        reader = NpyReader(FileSource(self.file), max_dim=self.max_dim, use_mmap=self.use_mmap)
        return reader.read_data(swap_bytes=self.swap_bytes)

    def write(self, data: Union[ArrayDescriptor, np.ndarray]) -> int:
        """
        Write an array to the file. An npy file holds a single array, so this
        can be called once per opened file.

        Args:
            data: An ArrayDescriptor or a NumPy array with a supported dtype
        """
        self._check_open('w')
        if self.written:
            raise IOError("File already holds an array")
        if not isinstance(data, ArrayDescriptor):
            data = ArrayDescriptor.from_numpy(data)
        written = write_descriptor(FileSink(self.file), data)
        self.written = True
        return written
