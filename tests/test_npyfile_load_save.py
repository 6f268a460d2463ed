"""
Unit tests for npyfile - Load and save tests

This test file covers loading and saving complete npy files through paths,
file objects, pipes and memory, the supported element types and shapes,
byte order conversion, the error paths of a load, and interoperability with
numpy.save / numpy.load.
"""

import io
import os
import sys
import struct
import logging
import tempfile
import pytest
import numpy as np

# Add the lib directory to the path to import npyfile
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))) + "/lib")
import npyfile
from npyfile import Ownership

HOST_ORDER = '<' if sys.byteorder == 'little' else '>'
OTHER_ORDER = '>' if sys.byteorder == 'little' else '<'

DTYPES = [np.int8, np.int16, np.int32, np.int64,
          np.uint8, np.uint16, np.uint32, np.uint64,
          np.float16, np.float32, np.float64]

SHAPES = [(), (0,), (1,), (5,), (2, 3), (3, 0, 2), (2, 3, 4)]


@pytest.fixture
def temp_file():
    """Fixture to create a temporary file for testing."""
    with tempfile.NamedTemporaryFile(delete=False, suffix='.npy') as tmp:
        temp_filename = tmp.name
    yield temp_filename
    # Clean up after test
    if os.path.exists(temp_filename):
        os.unlink(temp_filename)

def make_npy(header, payload=b'', major=1, minor=0, pad=True):
    """Build npy bytes by hand from header text, padding it to the 16-byte boundary."""
    if isinstance(header, str):
        header = header.encode('ascii')
    prelude_len = npyfile.prelude_size(major)
    if pad:
        header = header + b' ' * (-(prelude_len + len(header) + 1) % 16) + b'\n'
    length_format = '<H' if major == 1 else '<I'
    return (npyfile.MAGIC + bytes((major, minor)) + struct.pack(length_format, len(header))
            + header + payload)

def write_bytes(filename, data):
    with open(filename, 'wb') as f:
        f.write(data)

def make_pipe(data):
    """Return the read end of a pipe holding data, with the write end closed."""
    r, w = os.pipe()
    os.write(w, data)
    os.close(w)
    return os.fdopen(r, 'rb')

def sample_array(dtype, shape):
    count = int(np.prod(shape, dtype=np.int64))
    return (np.arange(count) % 100).astype(dtype).reshape(shape)


# Concrete files

SCENARIO_HEADER = "{'descr': '<f4', 'fortran_order': False, 'shape': (2, 3), }"
SCENARIO_VALUES = [0.5, 1.0, -1.5, 2.25, 3.0, -4.0]
SCENARIO_PAYLOAD = struct.pack('<6f', *SCENARIO_VALUES)

def check_scenario(descriptor):
    assert descriptor.dim == 2
    assert descriptor.shape == (2, 3)
    assert descriptor.element_count == 6
    assert descriptor.nbytes == 24
    assert descriptor.dtype.kind is npyfile.Kind.FLOAT
    assert descriptor.dtype.bit_width == 32
    assert descriptor.dtype.little_endian == npyfile.host_is_little_endian()
    assert descriptor.fortran_order is False
    assert descriptor.payload.nbytes == 24
    expected = np.array(SCENARIO_VALUES, dtype=np.float32).reshape(2, 3)
    np.testing.assert_array_equal(descriptor.to_numpy(copy=True), expected)

def test_load_scenario_mapped(temp_file):
    data = make_npy(SCENARIO_HEADER, SCENARIO_PAYLOAD)
    assert len(data) == 80 + 24
    write_bytes(temp_file, data)

    with npyfile.load(temp_file) as descriptor:
        assert descriptor.ownership is Ownership.MAPPED
        assert descriptor.major_version == 1
        assert descriptor.header_length == 70
        check_scenario(descriptor)

def test_load_scenario_buffered(temp_file):
    data = make_npy(SCENARIO_HEADER, SCENARIO_PAYLOAD)
    write_bytes(temp_file, data)

    with npyfile.load(temp_file, use_mmap=False) as descriptor:
        assert descriptor.ownership is Ownership.OWNED
        check_scenario(descriptor)

    with npyfile.load(data) as descriptor:
        assert descriptor.ownership is Ownership.OWNED
        check_scenario(descriptor)

def test_load_scenario_from_streams():
    data = make_npy(SCENARIO_HEADER, SCENARIO_PAYLOAD)

    with npyfile.load(io.BytesIO(data)) as descriptor:
        assert descriptor.ownership is Ownership.OWNED
        check_scenario(descriptor)

    with make_pipe(data) as f:
        with npyfile.load(f) as descriptor:
            assert descriptor.ownership is Ownership.OWNED
            check_scenario(descriptor)

def test_load_version_2(temp_file):
    data = make_npy(SCENARIO_HEADER, SCENARIO_PAYLOAD, major=2)
    write_bytes(temp_file, data)
    with npyfile.load(temp_file) as descriptor:
        assert descriptor.major_version == 2
        assert descriptor.minor_version == 0
        check_scenario(descriptor)

def test_load_scalar():
    data = make_npy("{'descr': '<i8', 'fortran_order': False, 'shape': (), }", struct.pack('<q', -7))
    with npyfile.load(data) as descriptor:
        assert descriptor.dim == 0
        assert descriptor.element_count == 1
        assert descriptor.to_numpy(copy=True) == -7

def test_load_zero_size(temp_file):
    """A shape with a zero dimension has an empty payload."""
    write_bytes(temp_file, make_npy("{'descr': '>u2', 'fortran_order': False, 'shape': (4, 0), }"))
    with npyfile.load(temp_file) as descriptor:
        assert descriptor.element_count == 0
        assert descriptor.payload.nbytes == 0
        assert descriptor.to_numpy().shape == (4, 0)


# Round trips

@pytest.mark.parametrize("dtype", DTYPES)
def test_save_load_dtypes(temp_file, dtype):
    for shape in SHAPES:
        array = sample_array(dtype, shape)
        npyfile.save(temp_file, array)
        for use_mmap in (True, False):
            with npyfile.load(temp_file, use_mmap=use_mmap) as descriptor:
                assert descriptor.shape == shape
                assert descriptor.dtype == npyfile.DType.from_numpy(dtype)
                np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

def test_save_descriptor_round_trip():
    payload = struct.pack('>3i', 1, -2, 3)
    descriptor = npyfile.ArrayDescriptor(shape=(3,), dtype='>i4', payload=payload)
    target = bytearray()
    written = npyfile.save(target, descriptor)
    assert written == len(target) == 80 + 12
    assert target.startswith(b"\x93NUMPY\x01\x00\x46\x00{'descr': '>i4', 'fortran_order': False, 'shape': (3, ), }")

    with npyfile.load(target, swap_bytes=False) as loaded:
        assert loaded.dtype.descr == '>i4'
        assert bytes(loaded.payload) == payload

def test_save_to_file_object():
    buffer = io.BytesIO()
    npyfile.save(buffer, np.arange(4, dtype=np.int16))
    assert not buffer.closed
    buffer.seek(0)
    with npyfile.load(buffer) as descriptor:
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), np.arange(4, dtype=np.int16))

def test_fortran_order_round_trip(temp_file):
    array = np.asfortranarray(np.arange(12, dtype=np.int32).reshape(3, 4))
    npyfile.save(temp_file, array)

    with npyfile.load(temp_file) as descriptor:
        assert descriptor.fortran_order is True
        assert descriptor.shape == (3, 4)
        loaded = descriptor.to_numpy(copy=True)
    np.testing.assert_array_equal(loaded, array)

    # payload bytes are column-major, exactly as in memory
    with open(temp_file, 'rb') as f:
        assert f.read()[-48:] == array.tobytes(order='F')

def test_non_contiguous_array_is_copied(temp_file):
    array = np.arange(20, dtype=np.float64).reshape(4, 5)[:, ::2]
    npyfile.save(temp_file, array)
    with npyfile.load(temp_file) as descriptor:
        assert descriptor.fortran_order is False
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

def test_max_dim_shape(temp_file):
    shape = (1,) * 31 + (3,)
    array = np.arange(3, dtype=np.uint32).reshape(shape)
    npyfile.save(temp_file, array)
    with npyfile.load(temp_file) as descriptor:
        assert descriptor.dim == 32
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)


# Byte order

def test_non_native_byte_order_is_normalized(temp_file):
    values = [1, -2, 300000, -400000]
    array = np.array(values, dtype=OTHER_ORDER + 'i4')
    npyfile.save(temp_file, array)

    with open(temp_file, 'rb') as f:
        assert f.read()[-16:] == array.tobytes()

    for use_mmap in (True, False):
        with npyfile.load(temp_file, use_mmap=use_mmap) as descriptor:
            assert descriptor.dtype.descr == HOST_ORDER + 'i4'
            np.testing.assert_array_equal(descriptor.to_numpy(copy=True), values)

def test_non_native_floats(temp_file):
    array = np.array([[1.5, -0.25], [1e300, -3.0]], dtype=OTHER_ORDER + 'f8')
    npyfile.save(temp_file, array)
    with npyfile.load(temp_file) as descriptor:
        assert descriptor.dtype.little_endian == npyfile.host_is_little_endian()
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

def test_swap_bytes_disabled(temp_file):
    array = np.array([1, 2, 3], dtype=OTHER_ORDER + 'u2')
    npyfile.save(temp_file, array)
    with npyfile.load(temp_file, swap_bytes=False) as descriptor:
        assert descriptor.dtype.descr == OTHER_ORDER + 'u2'
        assert bytes(descriptor.payload) == array.tobytes()
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), [1, 2, 3])

def test_single_byte_types_keep_their_bytes():
    data = make_npy("{'descr': '%si1', 'shape': (3,)}" % OTHER_ORDER, b'\x01\x02\xff')
    with npyfile.load(data) as descriptor:
        assert descriptor.dtype.descr == HOST_ORDER + 'i1'
        assert bytes(descriptor.payload) == b'\x01\x02\xff'
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), [1, 2, -1])


# Error paths

@pytest.mark.parametrize("payload_size", [399, 401])
def test_size_mismatch(temp_file, payload_size):
    data = make_npy("{'descr': '<f4', 'fortran_order': False, 'shape': (10, 10), }", b'\0' * payload_size)
    write_bytes(temp_file, data)

    with pytest.raises(npyfile.SizeMismatch):
        npyfile.load(temp_file)
    with pytest.raises(npyfile.SizeMismatch):
        npyfile.load(temp_file, use_mmap=False)
    with pytest.raises(npyfile.SizeMismatch):
        npyfile.load(data)

def test_short_pipe_is_truncated():
    data = make_npy("{'descr': '<f4', 'fortran_order': False, 'shape': (10, 10), }", b'\0' * 399)
    with make_pipe(data) as f:
        with pytest.raises(npyfile.Truncated):
            npyfile.load(f)

def test_header_read_does_not_check_payload(temp_file):
    write_bytes(temp_file, make_npy("{'descr': '<f4', 'shape': (10, 10)}", b'\0' * 12))
    reader = npyfile.NpyReader(temp_file)
    descriptor = reader.read_header()
    assert descriptor.shape == (10, 10)
    assert descriptor.payload is None

    with pytest.raises(npyfile.SizeMismatch):
        reader.read_data()
    assert descriptor.closed
    assert descriptor.payload is None

def test_misaligned_payload(temp_file):
    body = "{'descr': '<f4', 'fortran_order': False, 'shape': (), }"
    header = body + ' ' * (-(10 + len(body) + 1) % 16) + ' \n'
    write_bytes(temp_file, make_npy(header, b'\0' * 4, pad=False))

    reader = npyfile.NpyReader(temp_file)
    descriptor = reader.read_header()
    with pytest.raises(npyfile.AlignmentError):
        reader.read_data()
    assert descriptor.closed

@pytest.mark.parametrize("data", [
    b'',
    b'\x93NUMPY\x01\x00',
    make_npy("{'descr': '<f4', 'shape': ()}")[:15],
])
def test_too_small(data):
    with pytest.raises(npyfile.FormatError):
        npyfile.load(data)

def test_bad_magic(temp_file):
    write_bytes(temp_file, b'\x93NUMPX\x01\x00' + b'\0' * 56)
    with pytest.raises(npyfile.FormatError):
        npyfile.load(temp_file)

def test_unsupported_version():
    data = make_npy("{'descr': '<f4', 'shape': ()}", b'\0' * 4)
    data = data[:6] + b'\x03' + data[7:]
    with pytest.raises(npyfile.UnsupportedVersion):
        npyfile.load(data)

def test_header_length_limit():
    """The header length bound only applies to streams of unknown size."""
    data = npyfile.MAGIC + b'\x01\x00' + struct.pack('<H', 5000) + b' ' * 100
    with make_pipe(data) as f:
        with pytest.raises(npyfile.CapacityExceeded):
            npyfile.load(f)
    # a higher dimension bound accepts the length, but the data is too short
    with make_pipe(data) as f:
        with pytest.raises(npyfile.Truncated):
            npyfile.load(f, max_dim=300)
    assert npyfile.max_header_size(300) == 7024

    # a store of known size is bounded by its own length
    with pytest.raises(npyfile.Truncated):
        npyfile.load(data)

def test_large_version_2_header(temp_file):
    header = "{'descr': '<u1', 'fortran_order': False, 'shape': (1,), }" + " " * 2000
    data = make_npy(header, b'\x07', major=2)
    write_bytes(temp_file, data)

    for source, use_mmap in ((data, True), (temp_file, True), (temp_file, False)):
        with npyfile.load(source, use_mmap=use_mmap) as descriptor:
            assert descriptor.major_version == 2
            assert descriptor.header_length > npyfile.max_header_size()
            assert descriptor.shape == (1,)
            assert bytes(descriptor.payload) == b'\x07'

def test_non_ascii_header():
    data = make_npy(b"{'descr': '<f4', 'shape': (), }\xff", b'\0' * 4)
    with pytest.raises(npyfile.HeaderSyntaxError):
        npyfile.load(data)

def test_malformed_header_in_file(temp_file):
    write_bytes(temp_file, make_npy("{'descr': '<f4', 'shape': (1,,2)}", b'\0' * 8))
    with pytest.raises(npyfile.HeaderSyntaxError):
        npyfile.load(temp_file)

def test_unsupported_dtype_in_file():
    data = make_npy("{'descr': '<c8', 'shape': (1,)}", b'\0' * 8)
    with pytest.raises(npyfile.UnsupportedDtype):
        npyfile.load(data)

def test_source_closed_after_failed_load(temp_file):
    write_bytes(temp_file, make_npy("{'descr': '<f4', 'shape': (3,)}", b'\0' * 4))
    with open(temp_file, 'rb') as f:
        source = npyfile.FileSource(f)
        with pytest.raises(npyfile.SizeMismatch):
            npyfile.load(source, use_mmap=False)
        assert not f.closed

    source = npyfile.FileSource.open(temp_file)
    with pytest.raises(npyfile.SizeMismatch):
        npyfile.load(source)
    assert source.file.closed


# Writing errors

def test_save_payload_size_mismatch():
    descriptor = npyfile.ArrayDescriptor(shape=(2, 2), dtype='<i2', payload=b'\0' * 7)
    with pytest.raises(npyfile.SizeMismatch):
        npyfile.save(bytearray(), descriptor)
    descriptor = npyfile.ArrayDescriptor(shape=(2,), dtype='<i2')
    with pytest.raises(npyfile.SizeMismatch):
        npyfile.save(bytearray(), descriptor)

def test_save_without_payload_for_empty_shape():
    target = bytearray()
    npyfile.save(target, npyfile.ArrayDescriptor(shape=(0, 5), dtype='<f8'))
    assert len(target) == 80

def test_short_write():
    class ShortSink(npyfile.ByteSink):
        def __init__(self, short_call):
            self.calls = 0
            self.short_call = short_call

        def write(self, data):
            self.calls += 1
            size = memoryview(data).nbytes
            return size - 1 if self.calls == self.short_call else size

    descriptor = npyfile.ArrayDescriptor.from_numpy(np.arange(3, dtype=np.int64))
    for short_call in (1, 2):
        with pytest.raises(npyfile.NpyIOError):
            npyfile.save(ShortSink(short_call), descriptor)

def test_save_capacity():
    descriptor = npyfile.ArrayDescriptor(shape=(), dtype='<f4', payload=b'\0' * 4)
    with pytest.raises(npyfile.CapacityExceeded):
        npyfile.save(bytearray(), descriptor, capacity=64)
    assert npyfile.save(bytearray(), descriptor, capacity=80) == 84


# Descriptor lifetime

def test_close_is_idempotent(temp_file):
    npyfile.save(temp_file, np.arange(6, dtype=np.float32))
    descriptor = npyfile.load(temp_file)
    mapping = descriptor._transport.mapping
    descriptor.close()
    assert descriptor.closed
    assert descriptor.payload is None
    assert descriptor.ownership is Ownership.EXTERNAL
    assert mapping.closed
    descriptor.close()
    assert descriptor.closed

def test_close_with_live_array(temp_file):
    """A descriptor cannot be closed while a numpy view of its payload exists."""
    npyfile.save(temp_file, np.arange(6, dtype=np.float32))
    descriptor = npyfile.load(temp_file)
    array = descriptor.to_numpy()
    with pytest.raises(BufferError):
        descriptor.close()
    assert not descriptor.closed
    assert array[5] == 5.0

    del array
    descriptor.close()
    assert descriptor.closed

def test_mapped_array_changes_stay_private(temp_file):
    original = np.arange(6, dtype=np.int32)
    npyfile.save(temp_file, original)
    with npyfile.load(temp_file) as descriptor:
        array = descriptor.to_numpy()
        array[0] = 99
        assert descriptor.to_numpy()[0] == 99
        del array

    with npyfile.load(temp_file) as descriptor:
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), original)

def test_external_payload_is_not_released():
    buffer = bytearray(8)
    descriptor = npyfile.ArrayDescriptor(shape=(2,), dtype='<i4', payload=buffer)
    assert descriptor.ownership is Ownership.EXTERNAL
    descriptor.close()
    buffer[0] = 1
    assert buffer[0] == 1

def test_descriptor_defaults():
    descriptor = npyfile.ArrayDescriptor()
    assert descriptor.shape == ()
    assert descriptor.dim == 0
    assert descriptor.element_count == 1
    assert descriptor.dtype.descr == HOST_ORDER + 'f4'
    assert descriptor.fortran_order is False
    assert descriptor.payload is None

    descriptor.shape = [4, 5]
    assert descriptor.shape == (4, 5)
    assert descriptor.element_count == 20
    descriptor.dtype = '>u8'
    assert descriptor.nbytes == 160

    with pytest.raises(ValueError):
        descriptor.shape = (3, -1)
    with pytest.raises(npyfile.UnsupportedDtype):
        descriptor.dtype = '<x4'


# numpy interoperability

def test_numpy_reads_saved_file(temp_file):
    array = np.arange(24, dtype=np.int16).reshape(2, 3, 4)
    npyfile.save(temp_file, array)
    np.testing.assert_array_equal(np.load(temp_file), array)

    array = np.asfortranarray(np.linspace(0, 1, 6).reshape(2, 3))
    npyfile.save(temp_file, array)
    loaded = np.load(temp_file)
    assert loaded.flags.f_contiguous
    np.testing.assert_array_equal(loaded, array)

def test_load_numpy_saved_file(temp_file):
    array = np.arange(10, dtype=np.float64).reshape(2, 5) / 3
    with open(temp_file, 'wb') as f:
        np.save(f, array)
    with npyfile.load(temp_file) as descriptor:
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

def test_numpy_bool_and_complex_are_unsupported():
    with pytest.raises(npyfile.UnsupportedDtype):
        npyfile.ArrayDescriptor.from_numpy(np.zeros(3, dtype=bool))
    with pytest.raises(npyfile.UnsupportedDtype):
        npyfile.save(bytearray(), np.zeros(3, dtype=np.complex64))

def test_numpy_uint8_header():
    """numpy writes '|u1' for bytes, which is not a valid descriptor here."""
    descriptor = npyfile.ArrayDescriptor.from_numpy(np.arange(3, dtype=np.uint8))
    assert descriptor.dtype.descr == HOST_ORDER + 'u1'

    data = make_npy("{'descr': '|u1', 'fortran_order': False, 'shape': (3,), }", b'\0' * 3)
    with pytest.raises(npyfile.UnsupportedDtype):
        npyfile.load(data)


# File class

def test_file_write_read(temp_file):
    array = np.arange(6, dtype=np.int32).reshape(2, 3)
    with npyfile.File(temp_file, 'w') as nf:
        nf.write(array)

    with npyfile.File(temp_file, 'r') as nf:
        header = nf.read_header()
        assert header.shape == (2, 3)
        assert header.payload is None
        header.close()

    with npyfile.File(temp_file, 'r', use_mmap=False) as nf:
        with nf.read() as descriptor:
            np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

def test_file_descriptor_outlives_file(temp_file):
    npyfile.save(temp_file, np.arange(4, dtype=np.float32))
    with npyfile.File(temp_file, 'r') as nf:
        descriptor = nf.read()
    with descriptor:
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), np.arange(4, dtype=np.float32))

def test_file_modes(temp_file):
    with pytest.raises(ValueError):
        npyfile.File(temp_file, 'a').open()

    with npyfile.File(temp_file, 'w') as nf:
        with pytest.raises(IOError):
            nf.read()

    nf = npyfile.File(temp_file, 'w')
    with pytest.raises(IOError):
        nf.write(np.zeros(2))

def test_file_holds_one_array(temp_file):
    """A second write is refused and leaves the first array readable."""
    array = np.arange(3, dtype=np.int32)
    with npyfile.File(temp_file, 'w') as nf:
        nf.write(array)
        with pytest.raises(IOError):
            nf.write(np.arange(3, dtype=np.int32))

    with npyfile.File(temp_file, 'r') as nf:
        with nf.read() as descriptor:
            np.testing.assert_array_equal(descriptor.to_numpy(copy=True), array)

    # reopening starts a new file
    nf = npyfile.File(temp_file, 'w')
    with nf:
        nf.write(np.ones(2, dtype=np.float64))
    with nf:
        nf.write(np.zeros(4, dtype=np.float64))
    with npyfile.load(temp_file) as descriptor:
        np.testing.assert_array_equal(descriptor.to_numpy(copy=True), np.zeros(4))


# Logging

def test_transport_choice_is_logged(temp_file, caplog):
    npyfile.save(temp_file, np.zeros(4, dtype=np.float32))
    caplog.set_level(logging.DEBUG, logger='npyfile')

    with npyfile.load(temp_file, use_mmap=False):
        pass
    assert any("buffered reads" in record.getMessage() for record in caplog.records)

    caplog.clear()
    with npyfile.load(temp_file):
        pass
    assert any(record.getMessage().startswith("Mapped") for record in caplog.records)
