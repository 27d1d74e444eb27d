from __future__ import annotations

from dissect.cstruct import cstruct

regview_def = """
typedef ULONG       HCELL_INDEX;
typedef ULONGLONG   LARGE_INTEGER;

#define HTYPE_COUNT 2

flag KEY : USHORT {
    IS_VOLATILE     = 0x0001,
    HIVE_EXIT       = 0x0002,
    HIVE_ENTRY      = 0x0004,
    NO_DELETE       = 0x0008,
    SYM_LINK        = 0x0010,
    COMP_NAME       = 0x0020,
    PREDEF_HANDLE   = 0x0040,
    VIRT_MIRRORED   = 0x0080,
    VIRT_TARGET     = 0x0100,
    VIRTUAL_STORE   = 0x0200,
};

typedef struct _HBASE_BLOCK {
    CHAR            Signature[4];
    ULONG           Sequence1;
    ULONG           Sequence2;
    LARGE_INTEGER   TimeStamp;
    ULONG           Major;
    ULONG           Minor;
    ULONG           Type;
    ULONG           Format;
    HCELL_INDEX     RootCell;
    ULONG           Length;
    ULONG           Cluster;
    WCHAR           FileName[32];
    ULONG           Reserved1[99];
    ULONG           CheckSum;
    ULONG           Reserved2[0x37e];
    ULONG           BootType;
    ULONG           BootRecover;
} HBASE_BLOCK;

typedef struct _HBIN {
    CHAR            Signature[4];
    HCELL_INDEX     FileOffset;
    ULONG           Size;
    ULONG           Reserved[2];
    LARGE_INTEGER   TimeStamp;
    ULONG           Spare;
} HBIN;

typedef struct _CHILD_LIST {
    int32           Count;
    HCELL_INDEX     List;
} CHILD_LIST;

typedef struct _CM_KEY_NODE {
    CHAR            Signature[2];
    KEY             Flags;
    LARGE_INTEGER   LastWriteTime;
    ULONG           Spare;
    HCELL_INDEX     Parent;
    int32           SubKeyCounts[HTYPE_COUNT];
    HCELL_INDEX     SubKeyLists[HTYPE_COUNT];
    CHILD_LIST      ValueList;
    HCELL_INDEX     Security;
    HCELL_INDEX     Class;
    ULONG           MaxNameLen;
    ULONG           MaxClassLen;
    ULONG           MaxValueNameLen;
    ULONG           MaxValueDataLen;
    ULONG           WorkVar;
    USHORT          NameLength;
    USHORT          ClassLength;
    // CHAR            Name[NameLength];
} CM_KEY_NODE;

/* Common prefix of the li, lf, lh and ri records, the count is signed on disk */
typedef struct _CM_KEY_INDEX_HEADER {
    CHAR            Signature[2];
    int16           Count;
} CM_KEY_INDEX_HEADER;

typedef struct _CM_INDEX {
    HCELL_INDEX     Cell;
    CHAR            NameHint[4];
} CM_INDEX;

typedef struct _CM_HASH_INDEX {
    HCELL_INDEX     Cell;
    ULONG           HashKey;
} CM_HASH_INDEX;
"""

c_regview = cstruct().load(regview_def)

KEY = c_regview.KEY

# The base block occupies the first page, hive bins are page aligned
HBASE_BLOCK_SIZE = 0x1000
HBIN_SIGNATURE = b"hbin"
REGF_SIGNATURE = b"regf"

# Every cell starts with a signed 32-bit size field
CELL_SIZE_LENGTH = 4

# Cells larger than a single page are treated as corrupt
MAX_CELL_SIZE = 0x1000

# The checksum is the XOR of all dwords preceding it
CHECKSUM_OFFSET = 0x1FC

HCELL_NIL = 0xFFFFFFFF

# Windows refuses to create keys nested deeper than this
MAX_KEY_DEPTH = 512
