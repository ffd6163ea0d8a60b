from __future__ import annotations

import mmap

PAGE_SIZE = mmap.PAGESIZE

# typical Ethernet MSS with TCP timestamps; used when the OS won't report one
DEFAULT_SEGMENT_SIZE = 1448
DEFAULT_TIMEOUT_S = 0
DEFAULT_BACKLOG = 128

# the I/O buffer holds as many whole segments as fit in this many bytes
BUFFER_TARGET_BYTES = 1024 * 1024

MD5 = "md5"
SHA1 = "sha1"
DIGESTS = (MD5, SHA1)
