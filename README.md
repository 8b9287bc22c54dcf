# efivarkit

efivarkit works with UEFI firmware variables and the on-disk structures around them.

## Modules

- `efivarkit.guid` handles EFI GUIDs. The `Guid` dataclass decodes and encodes the 16-byte mixed-endian wire layout with `Guid.from_bytes` and `to_bytes`. It prints in the canonical lower-case form, orders by field, and has `is_zero()`. The module also offers these functions:
  - `str_to_guid` parses `xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx`, with or without braces.
  - `guid_to_str` formats a GUID as text.
  - `guid_cmp` makes a three-way comparison.
  - `guid_to_id_guid` formats a GUID wrapped in braces.
- `efivarkit.efivarfs.EfivarfsBackend` stores variables as files named `<name>-<guid>` in an efivarfs mount. The mount defaults to `/sys/firmware/efi/efivars/`, or to `EFIVARFS_PATH` when that is set. It has these methods:
  - `probe()` reports whether the path is an efivarfs mount, or is the one `EFIVARFS_PATH` names.
  - `get_variable()` returns `(data, attributes)`. As a non-root user it pauses 10 ms around each read, because the kernel limits how fast non-root users may read.
  - `get_variable_attributes()` and `get_variable_size()` read the attributes and the data size.
  - `set_variable()` writes a variable. It creates a new file with mode `0o600` unless you give another mode, and it clears and restores the immutable flag around the write.
  - `append_variable()` appends data to a variable.
  - `del_variable()` and `chmod_variable()` remove a variable or change its permission bits.
  - `variable_names()` yields `(guid, name)` pairs.
- `efivarkit.esl` walks an `EFI_SIGNATURE_LIST` database such as `db`, `dbx`, `KEK` or `PK`:
  - `iter_esl(buf, correct_size=False)` yields `EslEntry` records with `type`, `owner`, `data` and `status`. The status is `EslIterStatus.NEW_LIST` for the first entry of each list and `NEW_DATA` for each entry after it.
  - With `correct_size=True`, a list that claims more bytes than the buffer holds is shrunk to fit, and a `RuntimeWarning` is issued.
- `efivarkit.gpt_structs` holds the on-disk structures `GptHeader`, `GptEntry` and `LegacyMbr`, and two checks:
  - `LegacyMbr.is_pmbr_valid()` checks a protective MBR.
  - `validate_nptes()` checks whether a partition table fits between its bounds.
  - `compare_gpts()` returns the discrepancies between the primary and alternate headers.
- `efivarkit.gpt` reads a disk from a device path, a file path or a binary file object:
  - `is_gpt_valid()` checks the header at one LBA, including both CRC32s.
  - `find_valid_gpt()` returns the primary table if it is valid, otherwise the alternate. It also requires a protective MBR unless `ignore_pmbr_error` is true.
  - `get_partition_info(disk, num)` returns a `PartitionInfo` with the start, size and unique GUID of partition `num`, counted from 1.
- `efivarkit.errors` defines the error type and the error trace:
  - Failures raise `EfiError`, a subclass of `OSError` that carries an errno value.
  - Each thread keeps a trail of `ErrorEntry` records. You can read it with `error_entries()` and `error_get(n)`, and trim it with `error_pop()` and `error_clear()`.
  - `set_verbose()` and `set_loglevel()` control debug output. Debug messages go to the given log, or to stderr, when the verbosity is at least the log level.

## Installation

```
pip install .
```

## Example

```python
from efivarkit.efivarfs import EfivarfsBackend
from efivarkit.esl import iter_esl
from efivarkit.guid import str_to_guid

global_guid = str_to_guid("8be4df61-93ca-11d2-aa0d-00e098032b8c")
backend = EfivarfsBackend()
if backend.probe():
    data, attributes = backend.get_variable(global_guid, "BootOrder")
    print(data.hex(), hex(attributes))

    db_guid = str_to_guid("d719b2cb-3d3a-4596-a3bc-dad00e67656f")
    db, _ = backend.get_variable(db_guid, "db")
    for entry in iter_esl(db):
        print(entry.type, entry.owner, len(entry.data))
```

```python
from efivarkit.gpt import get_partition_info

info = get_partition_info("disk.img", 1, ignore_pmbr_error=True)
print(info.start, info.size, info.signature)
```

## What it does not do

- There is no layer that picks a storage backend for you, and efivarfs is the only backend. Use `EfivarfsBackend` directly.
- There is no import or export of variables to or from standalone files, such as exported variable files or dmpstore dumps.
- There is no command-line tool. Everything is used from Python.

## Running the tests

```
pip install .[test]
pytest
```