"""Boot firmware discovery for the emulated machine."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional, Sequence

from capi_builder.constants import (
    FIRMWARE_CODE_CANDIDATES,
    FIRMWARE_GENERIC_VARS_NAME,
    FIRMWARE_VARS_COPY_NAME,
    FIRMWARE_VARS_SUFFIX,
)
from capi_builder.exceptions import FirmwareNotFound
from capi_builder.models import FirmwarePair
from capi_builder.utils import ensure_directory, log


class FirmwareResolver:
    """Locate a UEFI code image and a companion variables store.

    The variables store is looked up in order: the CODE->VARS sibling, a
    ``<stem>_VARS.fd`` sibling, a generic ``QEMU_VARS.fd`` in the same
    directory, and finally a fresh copy of the code image in ``work_dir``.
    """

    def __init__(self, work_dir: Path, candidates: Sequence[Path] = FIRMWARE_CODE_CANDIDATES) -> None:
        self.work_dir = work_dir
        self.candidates = tuple(candidates)

    def find_code(self) -> Optional[Path]:
        for path in self.candidates:
            if path.is_file():
                return path
        return None

    def vars_candidates(self, code: Path):
        substituted = Path(str(code).replace("CODE", "VARS"))
        if substituted != code:
            yield substituted
        yield code.with_name(f"{code.stem}{FIRMWARE_VARS_SUFFIX}")
        yield code.with_name(FIRMWARE_GENERIC_VARS_NAME)

    def resolve(self) -> FirmwarePair:
        code = self.find_code()
        if code is None:
            searched = "\n    ".join(str(p) for p in self.candidates)
            raise FirmwareNotFound(
                "ARM64 EFI firmware not found. Searched:\n"
                f"    {searched}\n"
                "  Install with: apt install qemu-efi-aarch64"
            )
        for candidate in self.vars_candidates(code):
            if candidate.is_file():
                log("INFO", f"Using EFI firmware: {code} (vars: {candidate})")
                return FirmwarePair(code=code, vars=candidate)

        ensure_directory(self.work_dir)
        vars_copy = self.work_dir / FIRMWARE_VARS_COPY_NAME
        shutil.copyfile(code, vars_copy)
        vars_copy.chmod(0o644)
        log("WARN", f"No EFI vars template next to {code}; using a writable copy at {vars_copy}")
        return FirmwarePair(code=code, vars=vars_copy)
