"""
Exception hierarchy for the lifter.

MetadataError and ConflictingClassificationError abort a run before any
lifting starts. DecodeError and UnsupportedOpcodeError are attributable to a
single function and are collected per function by the batch driver.
InvariantViolation is a programming error and is never collected.
"""


class LiftError(Exception):
    """Base class for all user-facing lifting errors."""


class MetadataError(LiftError):
    """An address list could not be loaded or parsed."""

    def __init__(self, source, reason):
        super().__init__(f"{source}: {reason}")
        self.source = str(source)
        self.reason = reason


class ConflictingClassificationError(LiftError):
    """An address is claimed by both the code and the data metadata."""

    def __init__(self, addresses):
        self.addresses = sorted(addresses)
        shown = ', '.join(f"0x{a:08X}" for a in self.addresses[:8])
        if len(self.addresses) > 8:
            shown += f", ... ({len(self.addresses)} total)"
        super().__init__(f"address classified as both code and data: {shown}")


class DecodeError(LiftError):
    """Bytes at a reachable address do not form a valid instruction."""

    def __init__(self, address, reason):
        super().__init__(f"0x{address:08X}: {reason}")
        self.address = address
        self.reason = reason


class UnsupportedOpcodeError(LiftError):
    """The instruction has no lifting rule."""

    def __init__(self, mnemonic, address):
        super().__init__(f"0x{address:08X}: support for opcode '{mnemonic}' not yet implemented")
        self.mnemonic = mnemonic
        self.address = address


class InvariantViolation(AssertionError):
    """Emulated hardware state reached a state the lifter guarantees impossible."""
