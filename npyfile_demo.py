"""
npyfile Demo Script

This script demonstrates writing arrays to npy files and loading them back
through a memory map, through buffered reads and from memory, including the
byte order conversion of files written on machines of the other endianness.
"""

import numpy as np
import os
import sys

sys.path.append(os.path.join(os.path.dirname(os.path.abspath(__file__)), "lib"))
import npyfile

print("npyfile Demo")
print("============")

test_file = "npyfile_test_data.npy"

#---------------------------------
# 1. Saving and loading
#---------------------------------
print("\n1. Saving and loading")
print("---------------------")

array = np.arange(12, dtype=np.float32).reshape(3, 4) / 4
npyfile.save(test_file, array)
print(f"File size: {os.path.getsize(test_file)} bytes")

with open(test_file, 'rb') as f:
    raw = f.read()
major, minor, header_length, consumed = npyfile.parse_prelude(raw)
print(f"Version {major}.{minor}, header of {header_length} bytes:")
print(repr(raw[consumed:consumed + header_length].decode('ascii')))

with npyfile.load(test_file) as descriptor:
    print(f"\n{descriptor}")
    print(f"dim={descriptor.dim} element_count={descriptor.element_count} nbytes={descriptor.nbytes}")
    print(descriptor.to_numpy(copy=True))

#---------------------------------
# 2. Header only
#---------------------------------
print("\n2. Reading only the header")
print("--------------------------")

reader = npyfile.NpyReader(test_file)
header = reader.read_header()
print(f"shape={header.shape} dtype={header.dtype.descr} payload={header.payload}")
descriptor = reader.read_data()
print(f"payload of {descriptor.payload.nbytes} bytes, ownership: {descriptor.ownership.value}")
descriptor.close()

#---------------------------------
# 3. Transports
#---------------------------------
print("\n3. Mapped and buffered loading")
print("------------------------------")

for use_mmap in (True, False):
    with npyfile.load(test_file, use_mmap=use_mmap) as descriptor:
        print(f"use_mmap={use_mmap}: ownership {descriptor.ownership.value}")

with npyfile.load(raw) as descriptor:
    print(f"from bytes: ownership {descriptor.ownership.value}")

#---------------------------------
# 4. Byte order
#---------------------------------
print("\n4. Byte order conversion")
print("------------------------")

other = '>' if npyfile.host_is_little_endian() else '<'
swapped = np.array([1, 256, 65536], dtype=other + 'i4')
npyfile.save(test_file, swapped)

with npyfile.load(test_file, swap_bytes=False) as descriptor:
    print(f"As stored:  dtype={descriptor.dtype.descr} payload={bytes(descriptor.payload).hex()}")
with npyfile.load(test_file) as descriptor:
    print(f"Normalized: dtype={descriptor.dtype.descr} payload={bytes(descriptor.payload).hex()}")
    print(descriptor.to_numpy(copy=True))

#---------------------------------
# 5. Invalid input
#---------------------------------
print("\n5. Invalid input")
print("----------------")

broken = raw.replace(b"'shape': (3, 4, )", b"'shape': (3,, 4 )")
try:
    npyfile.load(broken)
except npyfile.HeaderSyntaxError as e:
    print(f"HeaderSyntaxError: {e}")

try:
    npyfile.load(raw[:-1])
except npyfile.SizeMismatch as e:
    print(f"SizeMismatch: {e}")

os.remove(test_file)
