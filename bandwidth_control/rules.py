"""
Chain topology and rule batch builders.

Everything in here is pure: functions take an intent and return either an
iptables-restore script or a sequence of single iptables commands. Nothing
is submitted from this module.
"""
from __future__ import annotations

import dataclasses
import typing

from . import BW_COSTLY_PREFIX
from . import BW_COSTLY_SHARED
from . import BW_DATA_SAVER
from . import BW_FORWARD
from . import BW_HAPPY_BOX
from . import BW_INPUT
from . import BW_MANGLE_POSTROUTING
from . import BW_OUTPUT
from . import BW_PENALTY_BOX
from . import BW_RAW_PREROUTING
from . import FIRST_APPLICATION_UID
from . import IptJump
from . import IptOp


# (table, chains) in the order they get declared
STATIC_CHAINS: typing.Tuple[typing.Tuple[str, typing.Tuple[str, ...]], ...] = (
    ("filter", (
        BW_INPUT,
        BW_OUTPUT,
        BW_FORWARD,
        BW_HAPPY_BOX,
        BW_PENALTY_BOX,
        BW_DATA_SAVER,
        BW_COSTLY_SHARED,
    )),
    ("raw", (BW_RAW_PREROUTING,)),
    ("mangle", (BW_MANGLE_POSTROUTING,)),
)

# new hooks always go to the top of bw_INPUT/bw_OUTPUT
HOOK_INSERT_POS = 1

ALERT_TEMPLATE = "{op} {chain} -m quota2 ! --quota {bytes} --name {name}"


@dataclasses.dataclass(frozen=True)
class TableBatch:
    table: str
    directives: typing.Tuple[str, ...]

    def __str__(self) -> str:
        lines = [f"*{self.table}"]
        lines.extend(self.directives)
        lines.append("COMMIT")
        return "".join(line + "\n" for line in lines)


@dataclasses.dataclass(frozen=True)
class RestoreScript:
    batches: typing.Tuple[TableBatch, ...]

    def __str__(self) -> str:
        return "".join(str(b) for b in self.batches)


def restore_script(*batches: typing.Tuple[str, typing.Iterable[str]]
                   ) -> RestoreScript:
    return RestoreScript(tuple(
        TableBatch(table, tuple(directives)) for table, directives in batches))


@dataclasses.dataclass(frozen=True)
class IptablesCommand:
    args: typing.Tuple[str, ...]
    # deletes of rules that may not exist are allowed to fail
    check: bool = True

    @classmethod
    def parse(cls, cmd: str, check: bool = True) -> "IptablesCommand":
        return cls(tuple(cmd.split()), check)

    def __str__(self) -> str:
        return " ".join(self.args)


# ---------------------------------------------------------------------------
# topology

def costly_chain(cost_name: str) -> str:
    return BW_COSTLY_PREFIX + cost_name


def list_chains_args() -> typing.Tuple[str, ...]:
    return ("-S",)


def find_stale_costly_chains(rule_list: str) -> typing.List[str]:
    """Dynamic costly chains left behind by a previous run."""
    stale = []
    for line in rule_list.split("\n"):
        parts = line.split()
        if len(parts) != 2 or parts[0] != "-N":
            continue
        chain = parts[1]
        if chain.startswith(BW_COSTLY_PREFIX) and chain != BW_COSTLY_SHARED:
            stale.append(chain)
    return stale


def cleanup_stale_chains_script(
    chains: typing.Sequence[str],
    delete: bool,
) -> RestoreScript:
    directives = []
    for chain in chains:
        directives.append(f":{chain} -")
        if delete:
            directives.append(f"-X {chain}")
    return restore_script(("filter", directives))


def flush_static_chains_script() -> RestoreScript:
    return restore_script(*(
        (table, [f":{chain} -" for chain in chains])
        for table, chains in STATIC_CHAINS
    ))


def basic_accounting_script() -> RestoreScript:
    return restore_script(
        ("filter", [
            f"-A {BW_INPUT} -m owner --socket-exists",
            f"-A {BW_OUTPUT} -m owner --socket-exists",
            f"-A {BW_COSTLY_SHARED} --jump {BW_PENALTY_BOX}",
            f"-A {BW_PENALTY_BOX} --jump {BW_HAPPY_BOX}",
            f"-A {BW_HAPPY_BOX} --jump {BW_DATA_SAVER}",
            f"-A {BW_DATA_SAVER} -j RETURN",
            f"-I {BW_HAPPY_BOX} -m owner --uid-owner "
            f"0-{FIRST_APPLICATION_UID - 1} --jump RETURN",
        ]),
        ("raw", [f"-A {BW_RAW_PREROUTING} -m owner --socket-exists"]),
        ("mangle", [f"-A {BW_MANGLE_POSTROUTING} -m owner --socket-exists"]),
    )


def data_saver_script(enable: bool) -> RestoreScript:
    target = "REJECT" if enable else "RETURN"
    return restore_script(
        ("filter", [f"{IptOp.REPLACE} {BW_DATA_SAVER} 1 --jump {target}"]))


# ---------------------------------------------------------------------------
# alerts and special apps

def alert_directive(op: IptOp, chain: str, name: str, quota: int) -> str:
    # the kernel ignores --quota on deletes, so the same template serves both
    return ALERT_TEMPLATE.format(op=op, chain=chain, bytes=quota, name=name)


def alert_script(op: IptOp, name: str, quota: int,
                 chains: typing.Sequence[str] = (BW_INPUT, BW_OUTPUT),
                 ) -> RestoreScript:
    return restore_script(
        ("filter", [alert_directive(op, c, name, quota) for c in chains]))


def forward_alert_script(op: IptOp, name: str, quota: int) -> RestoreScript:
    return alert_script(op, name, quota, (BW_FORWARD,))


def costly_alert_script(op: IptOp, cost_name: str, quota: int
                        ) -> RestoreScript:
    return alert_script(op, cost_name + "Alert", quota,
                        (costly_chain(cost_name),))


def special_apps_script(
    op: IptOp,
    chain: str,
    jump: IptJump,
    uids: typing.Iterable[str],
) -> RestoreScript:
    return restore_script(("filter", [
        f"{op} {chain} -m owner --uid-owner {uid}{jump}" for uid in uids]))


# ---------------------------------------------------------------------------
# costly interfaces

def prep_chain_commands(chain: str
                        ) -> typing.Tuple[IptablesCommand, IptablesCommand]:
    """
    Flush and declare a costly chain.

    Exactly one of the two is expected to fail: the flush if the chain is
    new, the declaration if it survived a restart.
    """
    return (IptablesCommand.parse(f"-F {chain}", check=False),
            IptablesCommand.parse(f"-N {chain}", check=False))


def penalty_jump_command(chain: str) -> IptablesCommand:
    return IptablesCommand.parse(f"-A {chain} -j {BW_PENALTY_BOX}")


def hook_commands(iface: str, chain: str) -> typing.List[IptablesCommand]:
    cmd = IptablesCommand.parse
    return [
        cmd(f"-D {BW_INPUT} -i {iface} --jump {chain}", check=False),
        cmd(f"-I {BW_INPUT} {HOOK_INSERT_POS} -i {iface} --jump {chain}"),
        cmd(f"-D {BW_OUTPUT} -o {iface} --jump {chain}", check=False),
        cmd(f"-I {BW_OUTPUT} {HOOK_INSERT_POS} -o {iface} --jump {chain}"),
        cmd(f"-D {BW_FORWARD} -o {iface} --jump {chain}", check=False),
        cmd(f"-A {BW_FORWARD} -o {iface} --jump {chain}"),
    ]


def unhook_commands(iface: str, chain: str) -> typing.List[IptablesCommand]:
    # removal has to be repeatable after a partial failure
    cmd = IptablesCommand.parse
    return [
        cmd(f"-D {BW_INPUT} -i {iface} --jump {chain}", check=False),
        cmd(f"-D {BW_OUTPUT} -o {iface} --jump {chain}", check=False),
        cmd(f"-D {BW_FORWARD} -o {iface} --jump {chain}", check=False),
    ]


def remove_chain_commands(chain: str) -> typing.List[IptablesCommand]:
    return [IptablesCommand.parse(f"-F {chain}", check=False),
            IptablesCommand.parse(f"-X {chain}", check=False)]


def quota_command(op: IptOp, cost_name: str, quota: int,
                  check: bool = True) -> IptablesCommand:
    return IptablesCommand.parse(
        f"{op} {costly_chain(cost_name)} -m quota2 ! --quota {quota} "
        f"--name {cost_name}{IptJump.REJECT}", check)
