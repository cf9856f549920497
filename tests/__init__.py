"""Test helpers for validator-lab."""

from dataclasses import dataclass, field
import json
from pathlib import Path

from validator_lab import command

NAMESPACE = "lab"
SHRED_VERSION = 12345


@dataclass
class FakeTools:
    """Stands in for keygen, genesis, ledger tool, bench-tps and docker.

    Every command is recorded. Programs (or `program subcommand` pairs) listed
    in `fail` exit with an error.
    """

    calls: list[list[str]] = field(default_factory=list)
    fail: set[str] = field(default_factory=set)
    shred_version: int = SHRED_VERSION
    _keys: int = 0

    def programs(self) -> list[str]:
        return [Path(args[0]).name for args in self.calls]

    def calls_to(self, program: str) -> list[list[str]]:
        return [args for args in self.calls if Path(args[0]).name == program]

    async def run(self, cmd: command.Command, stdin: bytes | None = None) -> str:
        args = list(cmd.cmd)
        self.calls.append(args)
        program = Path(args[0]).name
        if program in self.fail or " ".join([program] + args[1:2]) in self.fail:
            raise cmd.exc(f"Command '{cmd}' failed with return code 1")
        if program == "solana-keygen":
            self._keys += 1
            outfile = Path(args[args.index("--outfile") + 1])
            outfile.parent.mkdir(parents=True, exist_ok=True)
            outfile.write_text(json.dumps([self._keys] * 64))
        elif program == "solana-genesis":
            ledger = Path(args[args.index("--ledger") + 1])
            ledger.mkdir(parents=True, exist_ok=True)
            (ledger / "genesis.bin").write_bytes(b"genesis")
        elif program == "agave-ledger-tool":
            return f"{self.shred_version}\n"
        elif program == "solana-bench-tps" and "--write-client-keys" in args:
            Path(args[args.index("--write-client-keys") + 1]).write_text("accounts: []\n")
        return ""
