from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from dumpstate.archive import PROTO_DIR, PROTO_EXT, ZIP_ROOT_DIR
from dumpstate.dumps import (
    ANR_FILE_PREFIX,
    TOMBSTONE_FILE_PREFIX,
    CollectedDumpSet,
)
from dumpstate.options import VERSION_SPLIT_ANR
from dumpstate.properties import get_bool, get_int, is_dry_run, is_user_build
from dumpstate.runner import AS_ROOT, AS_ROOT_20, CommandOptions, DurationReporter, TaskRunner
from dumpstate.status import RunStatus

if TYPE_CHECKING:
    from dumpstate.orchestrator import RunContext

LOGGER = logging.getLogger(__name__)

PSTORE_LAST_KMSG = "/sys/fs/pstore/console-ramoops"
ALT_PSTORE_LAST_KMSG = "/sys/fs/pstore/console-ramoops-0"
RECOVERY_DIR = "/cache/recovery"
RECOVERY_DATA_DIR = "/data/misc/recovery"
UPDATE_ENGINE_LOG_DIR = "/data/misc/update_engine_log"
LOGPERSIST_DATA_DIR = "/data/misc/logd"
PROFILE_DATA_DIR_CUR = "/data/misc/profiles/cur"
PROFILE_DATA_DIR_REF = "/data/misc/profiles/ref"
XFRM_STAT_PROC_FILE = "/proc/net/xfrm_stat"
WMTRACE_DATA_DIR = "/data/misc/wmtrace"
OTA_METADATA_DIR = "/metadata/ota"
BLUETOOTH_LOGS_DIR = "/data/misc/bluetooth/logs"

MINIMUM_LOGCAT_TIMEOUT = 50.0
LOGCAT_FORMAT = ["-v", "threadtime", "-v", "printable", "-v", "uid", "-d", "*:v"]
DUMPSYS_COMPONENTS_OPTIONS = CommandOptions(timeout=60.0)
DUMPSYS_90 = CommandOptions(timeout=90.0)
SCREENSHOT_OPTIONS = CommandOptions(timeout=10.0, always=True, drop_root=True, redirect_stderr=True)


class PrivilegeDropError(RuntimeError):
    pass


def consent_checked(ctx: "RunContext", body: Callable[..., Any], *args: Any) -> RunStatus:
    """Run a slow ``body`` between two consent checkpoints."""
    if ctx.consent.is_denied():
        LOGGER.error("Returning early as user denied consent to share bugreport with calling app.")
        return RunStatus.USER_CONSENT_DENIED
    result = body(*args)
    if isinstance(result, RunStatus) and result != RunStatus.OK:
        return result
    if ctx.consent.is_denied():
        LOGGER.error("Returning early as user denied consent to share bugreport with calling app.")
        return RunStatus.USER_CONSENT_DENIED
    return RunStatus.OK


def print_header(ctx: "RunContext", runner: TaskRunner | None = None) -> None:
    runner = runner or ctx.runner
    props = ctx.properties
    date = datetime.fromtimestamp(ctx.now).strftime("%Y-%m-%d %H:%M:%S")
    runner.section(f"dumpstate: {date}")
    lines = [
        "",
        f"Build: {props.get('ro.build.display.id', '(unknown)')}",
        # Other tools parse the fingerprint line as is.
        f"Build fingerprint: '{props.get('ro.build.fingerprint', '(unknown)')}'",
        f"Bootloader: {props.get('ro.bootloader', '(unknown)')}",
        f"Radio: {props.get('gsm.version.baseband', '(unknown)')}",
        f"Network: {props.get('gsm.operator.alpha', '(unknown)')}",
    ]
    runner.write("\n".join(lines) + "\n")
    try:
        kernel = Path("/proc/version").read_text(encoding="utf-8", errors="replace").strip()
    except OSError as exc:
        kernel = f"*** /proc/version: {exc.strerror or exc}"
    runner.write(f"Kernel: {kernel}\n")
    runner.write(f"Command line: {ctx.kernel_cmdline}\n")
    runner.write("Uptime: ")
    runner.run_command("", ["uptime", "-p"], CommandOptions(timeout=1.0, always=True))
    runner.write(f"Bugreport format version: {ctx.version}\n")
    runner.write(
        f"Dumpstate info: id={ctx.id} pid={ctx.pid} dry_run={int(is_dry_run(props))} "
        f"args={ctx.options.args} extra_options={ctx.options.extra_options}\n\n"
    )
    runner.flush()


def take_screenshot(ctx: "RunContext", path: Path | None = None) -> bool:
    target = path or ctx.screenshot_path
    if target is None:
        return False
    if ctx.screenshot_taker is not None:
        ok = ctx.screenshot_taker(target)
    else:
        result = ctx.runner.run_command(
            "", ["/system/bin/screencap", "-p", str(target)], SCREENSHOT_OPTIONS
        )
        ok = result.ok
    if ok:
        LOGGER.info("Screenshot saved on %s", target)
    else:
        LOGGER.error("Failed to take screenshot on %s", target)
    return ok


def do_logcat(ctx: "RunContext") -> None:
    run = ctx.runner.run_command
    timeout = CommandOptions(timeout=MINIMUM_LOGCAT_TIMEOUT)
    run("SYSTEM LOG", ["logcat", *LOGCAT_FORMAT], timeout)
    for title, buffer in (("EVENT LOG", "events"), ("STATS LOG", "stats"), ("RADIO LOG", "radio")):
        run(title, ["logcat", "-b", buffer, *LOGCAT_FORMAT], timeout)
    run("LOG STATISTICS", ["logcat", "-b", "all", "-S"])
    run("LAST LOGCAT", ["logcat", "-L", "-b", "all", *LOGCAT_FORMAT])


def do_system_logcat(ctx: "RunContext", since: float) -> None:
    since_str = datetime.fromtimestamp(since).strftime("%Y-%m-%d %H:%M:%S.000")
    ctx.runner.run_command(
        "SYSTEM LOG",
        ["logcat", *LOGCAT_FORMAT, "-T", since_str],
        CommandOptions(timeout=MINIMUM_LOGCAT_TIMEOUT),
    )


def do_kernel_logcat(ctx: "RunContext") -> None:
    ctx.runner.run_command(
        "KERNEL LOG",
        ["logcat", "-b", "kernel", *LOGCAT_FORMAT],
        CommandOptions(timeout=MINIMUM_LOGCAT_TIMEOUT),
    )


def do_kmsg(ctx: "RunContext") -> None:
    for path in (PSTORE_LAST_KMSG, ALT_PSTORE_LAST_KMSG):
        if os.path.exists(path):
            ctx.runner.dump_file("LAST KMSG", path)
            return
    ctx.runner.dump_file("LAST KMSG", "/proc/last_kmsg")


def dump_iptables(ctx: "RunContext") -> None:
    run = ctx.runner.run_command
    run("IPTABLES", ["iptables", "-L", "-nvx"])
    run("IP6TABLES", ["ip6tables", "-L", "-nvx"])
    run("IPTABLES NAT", ["iptables", "-t", "nat", "-L", "-nvx"])
    run("IPTABLES MANGLE", ["iptables", "-t", "mangle", "-L", "-nvx"])
    run("IP6TABLES MANGLE", ["ip6tables", "-t", "mangle", "-L", "-nvx"])
    run("IPTABLES RAW", ["iptables", "-t", "raw", "-L", "-nvx"])
    run("IP6TABLES RAW", ["ip6tables", "-t", "raw", "-L", "-nvx"])


def dump_packet_stats(ctx: "RunContext") -> None:
    dump = ctx.runner.dump_file
    dump("NETWORK DEV INFO", "/proc/net/dev")
    dump("QTAGUID NETWORK INTERFACES INFO", "/proc/net/xt_qtaguid/iface_stat_all")
    dump("QTAGUID NETWORK INTERFACES INFO (xt)", "/proc/net/xt_qtaguid/iface_stat_fmt")
    dump("QTAGUID CTRL INFO", "/proc/net/xt_qtaguid/ctrl")
    dump("QTAGUID STATS INFO", "/proc/net/xt_qtaguid/stats")


def dump_ip_addr_and_rules(ctx: "RunContext") -> None:
    run = ctx.runner.run_command
    run("NETWORK INTERFACES", ["ip", "link"])
    run("IPv4 ADDRESSES", ["ip", "-4", "addr", "show"])
    run("IPv6 ADDRESSES", ["ip", "-6", "addr", "show"])
    run("IP RULES", ["ip", "rule", "show"])
    run("IP RULES v6", ["ip", "-6", "rule", "show"])


def dump_route_tables(ctx: "RunContext") -> None:
    run = ctx.runner.run_command
    run("ROUTE TABLE IPv4", ["ip", "-4", "route", "show", "table", "all"])
    run("ROUTE TABLE IPv6", ["ip", "-6", "route", "show", "table", "all"])


def dump_hals(ctx: "RunContext") -> None:
    ctx.runner.run_command(
        "HARDWARE HALS", ["lshal", "--all", "--types=all"], CommandOptions(timeout=10.0)
    )


def dump_incident_report(ctx: "RunContext") -> None:
    if ctx.archive is None:
        LOGGER.debug("Not dumping incident report because it's not a zipped bugreport")
        return
    with DurationReporter("INCIDENT REPORT"):
        path = ctx.internal_dir / "tmp_incident_report"
        try:
            with open(path, "wb") as handle:
                runner = TaskRunner(ctx.properties, ctx.reporter, handle)
                runner.run_command("", ["incident", "-u"], CommandOptions(timeout=120.0))
            if path.stat().st_size > 0:
                # proto/incident.proto is reserved for the incident service dump.
                ctx.archive.add_entry(f"{PROTO_DIR}incident_report{PROTO_EXT}", path)
        except OSError as exc:
            LOGGER.error("Could not dump incident report to %s: %s", path, exc)
        finally:
            try:
                path.unlink()
            except FileNotFoundError:
                pass


def add_anr_trace_files(ctx: "RunContext") -> None:
    add_to_zip = ctx.archive is not None and ctx.version == VERSION_SPLIT_ANR
    anr_dir = str(ctx.config.traces.traces_dir)
    LOGGER.debug(
        "Adding ANR traces: dump_traces_path=%s, anr_traces_dir=%s", ctx.dump_traces_path, anr_dir
    )
    if ctx.dump_traces_path is not None:
        if add_to_zip:
            ctx.archive.add_entry(
                f"{ZIP_ROOT_DIR}{anr_dir}/traces-just-now.txt", ctx.dump_traces_path
            )
        else:
            LOGGER.debug("Dumping current ANR traces (%s) to the main entry", ctx.dump_traces_path)
            ctx.runner.dump_file("VM TRACES JUST NOW", str(ctx.dump_traces_path))
        try:
            ctx.dump_traces_path.unlink()
        except OSError as exc:
            LOGGER.warning(
                "Error unlinking temporary trace path %s: %s", ctx.dump_traces_path, exc
            )
        ctx.dump_traces_path = None

    anrs = ctx.anr_data.entries
    if anrs:
        ctx.anr_data.add(anrs[:1], "VM TRACES AT LAST ANR", add_to_zip, ctx.archive, ctx.runner)
        # Historical ANRs are always separate entries; the latest one too when
        # it was written into the main entry.
        ctx.anr_data.add(
            anrs[1 if add_to_zip else 0 :], "HISTORICAL ANR", True, ctx.archive, ctx.runner
        )
    else:
        ctx.runner.write(f"*** NO ANRs to dump in {anr_dir}\n\n")

    ctx.runner.run_command("ANR FILES", ["ls", "-lt", anr_dir])
    index = 0
    while True:
        slow_trace = os.path.join(anr_dir, f"slow{index:02d}.txt")
        if not os.path.exists(slow_trace):
            break
        ctx.runner.dump_file("VM TRACES WHEN SLOW", slow_trace)
        index += 1


def add_tombstones(ctx: "RunContext") -> None:
    # Tombstones always go to separate entries, never into the main report.
    dumped = ctx.tombstone_data.add(
        ctx.tombstone_data.entries, "TOMBSTONE", True, ctx.archive, ctx.runner
    )
    if not dumped:
        ctx.runner.write(f"*** NO TOMBSTONES to dump in {ctx.config.traces.tombstones_dir}\n\n")


def add_dir(ctx: "RunContext", directory: str, recursive: bool) -> None:
    if ctx.archive is None:
        return
    ctx.archive.add_dir(directory, recursive)


def drop_root_user(uid: int, gid: int) -> None:
    if os.getgid() == gid and os.getuid() == uid:
        LOGGER.debug("dumpstate UID/GID already dropped to shell")
        return
    if os.geteuid() != 0:
        LOGGER.debug("Not running as root; nothing to drop")
        return
    try:
        os.setgroups([gid])
        os.setgid(gid)
        os.setuid(uid)
    except OSError as exc:
        raise PrivilegeDropError(f"Unable to drop root to {uid}:{gid}: {exc}") from exc
    LOGGER.info("dumpstate dropped to uid=%d gid=%d", uid, gid)


def drop_privileges(ctx: "RunContext") -> RunStatus:
    if ctx.drop_privileges is not None:
        if not ctx.drop_privileges():
            raise PrivilegeDropError("Privilege drop hook reported failure")
    else:
        drop_root_user(ctx.config.pipeline.shell_uid, ctx.config.pipeline.shell_gid)
    if ctx.consent.is_denied():
        return RunStatus.USER_CONSENT_DENIED
    return RunStatus.OK


def critical_priority_dumps(ctx: "RunContext") -> RunStatus:
    # Taken before traces to keep system stats close to their initial state.
    return ctx.dumpsys.run_critical()


def first_log_capture(ctx: "RunContext") -> RunStatus:
    do_logcat(ctx)
    ctx.logcat_since = time.time()
    return RunStatus.OK


def stack_trace_collection(ctx: "RunContext") -> RunStatus:
    result = ctx.traces.collect(ctx.config.traces.traces_dir, ctx.consent)
    ctx.dump_traces_path = result.path
    return result.status


def root_only_file_collections(ctx: "RunContext") -> RunStatus:
    zipping = ctx.archive is not None
    traces = ctx.config.traces
    ctx.tombstone_data = CollectedDumpSet.scan(
        f"{traces.tombstones_dir}/", TOMBSTONE_FILE_PREFIX, not zipping, ctx.now
    )
    ctx.anr_data = CollectedDumpSet.scan(
        f"{traces.traces_dir}/", ANR_FILE_PREFIX, not zipping, ctx.now
    )

    add_dir(ctx, RECOVERY_DIR, True)
    add_dir(ctx, RECOVERY_DATA_DIR, True)
    add_dir(ctx, UPDATE_ENGINE_LOG_DIR, True)
    add_dir(ctx, LOGPERSIST_DATA_DIR, False)
    if not is_user_build(ctx.properties):
        add_dir(ctx, PROFILE_DATA_DIR_CUR, True)
        add_dir(ctx, PROFILE_DATA_DIR_REF, True)
    with DurationReporter("MOUNT INFO", verbose=True):
        ctx.mountinfo.collect(ctx.archive)
    dump_iptables(ctx)
    if get_bool(ctx.properties, "ro.boot.dynamic_partitions"):
        ctx.runner.run_command("LPDUMP", ["lpdump", "--all"])
        ctx.runner.run_command("DEVICE-MAPPER", ["gsid", "dump-device-mapper"])
    add_dir(ctx, OTA_METADATA_DIR, True)

    run = ctx.runner.run_command
    run("IP XFRM POLICY", ["ip", "xfrm", "policy"], CommandOptions(timeout=10.0))
    ctx.runner.dump_file("XFRM STATS", XFRM_STAT_PROC_FILE)
    run("DETAILED SOCKET STATE", ["ss", "-eionptu"], CommandOptions(timeout=10.0))
    run("IOTOP", ["iotop", "-n", "1", "-m", "100"])
    if os.path.exists("/product/bin/dmabuf_dump"):
        run("Dmabuf dump", ["/product/bin/dmabuf_dump"])
    for kind in ("cpu", "memory", "io"):
        ctx.runner.dump_file(f"PSI {kind}", f"/proc/pressure/{kind}")
    return RunStatus.OK


def remaining_dumps(ctx: "RunContext") -> RunStatus:
    with DurationReporter("DUMPSTATE"):
        return _remaining_dumps(ctx)


def _remaining_dumps(ctx: "RunContext") -> RunStatus:
    runner = ctx.runner
    run = runner.run_command
    dump = runner.dump_file
    dumpsys = ctx.dumpsys.run_service

    run("UPTIME", ["uptime"])
    dump("MEMORY INFO", "/proc/meminfo")
    run(
        "CPU INFO",
        ["top", "-b", "-n", "1", "-H", "-s", "6", "-o",
         "pid,tid,user,pr,ni,%cpu,s,virt,res,pcy,cmd,name"],
    )
    status = consent_checked(ctx, run, "PROCRANK", ["procrank"], AS_ROOT_20)
    if status != RunStatus.OK:
        return status

    for title, path in (
        ("VIRTUAL MEMORY STATS", "/proc/vmstat"),
        ("VMALLOC INFO", "/proc/vmallocinfo"),
        ("SLAB INFO", "/proc/slabinfo"),
        ("ZONEINFO", "/proc/zoneinfo"),
        ("PAGETYPEINFO", "/proc/pagetypeinfo"),
        ("BUDDYINFO", "/proc/buddyinfo"),
        ("KERNEL WAKE SOURCES", "/d/wakeup_sources"),
        ("KERNEL CPUFREQ", "/sys/devices/system/cpu/cpu0/cpufreq/stats/time_in_state"),
    ):
        dump(title, path)

    run("PROCESSES AND THREADS", ["ps", "-A", "-T", "-Z", "-O", "pri,nice,rtprio,sched,pcy,time"])
    status = consent_checked(ctx, run, "LIBRANK", ["librank"], AS_ROOT)
    if status != RunStatus.OK:
        return status
    dump_hals(ctx)
    run("PRINTENV", ["printenv"])
    run("NETSTAT", ["netstat", "-nW"])
    if os.path.exists("/proc/modules"):
        run("LSMOD", ["lsmod"])
    else:
        LOGGER.debug("Skipping 'lsmod' because /proc/modules does not exist")
    if get_bool(ctx.properties, "ro.logd.kernel", True):
        do_kernel_logcat(ctx)
    else:
        run("KERNEL LOG (dmesg)", ["dmesg"])
    run("LIST OF OPEN FILES", ["lsof"], AS_ROOT)

    add_dir(ctx, BLUETOOTH_LOGS_DIR, True)
    if ctx.options.do_fb and not ctx.do_early_screenshot:
        LOGGER.info("taking late screenshot")
        take_screenshot(ctx)

    add_anr_trace_files(ctx)
    add_tombstones(ctx)
    dump_packet_stats(ctx)
    dumpsys("EBPF MAP STATS", ["netd", "trafficcontroller"])
    do_kmsg(ctx)
    dump_ip_addr_and_rules(ctx)
    dump_route_tables(ctx)
    run("ARP CACHE", ["ip", "-4", "neigh", "show"])
    run("IPv6 ND CACHE", ["ip", "-6", "neigh", "show"])
    run("MULTICAST ADDRESSES", ["ip", "maddr"])

    status = consent_checked(ctx, ctx.dumpsys.run_high)
    if status != RunStatus.OK:
        return status

    run("SYSTEM PROPERTIES", ["getprop"])
    run("STORAGED IO INFO", ["storaged", "-u", "-p"])
    run("FILESYSTEMS & FREE SPACE", ["df"])
    for title, path in (
        ("BINDER FAILED TRANSACTION LOG", "/sys/kernel/debug/binder/failed_transaction_log"),
        ("BINDER TRANSACTION LOG", "/sys/kernel/debug/binder/transaction_log"),
        ("BINDER TRANSACTIONS", "/sys/kernel/debug/binder/transactions"),
        ("BINDER STATS", "/sys/kernel/debug/binder/stats"),
        ("BINDER STATE", "/sys/kernel/debug/binder/state"),
    ):
        dump(title, path)
    if not is_user_build(ctx.properties):
        add_dir(ctx, WMTRACE_DATA_DIR, False)

    status = consent_checked(ctx, dump_board, ctx)
    if status != RunStatus.OK:
        return status

    ril_timeout = get_int(ctx.properties, "ril.dumpstate.timeout", 0)
    if ril_timeout > 0:
        # su is missing on user builds; vendor dumps may not need root.
        as_root = not is_user_build(ctx.properties)
        ril_options = CommandOptions(float(ril_timeout), as_root=as_root)
        run("DUMP VENDOR RIL LOGS", ["vril-dump"], ril_options)

    runner.section("Android Framework Services")
    status = consent_checked(ctx, ctx.dumpsys.run_normal)
    if status != RunStatus.OK:
        return status

    runner.section("Checkins")
    dumpsys("CHECKIN BATTERYSTATS", ["batterystats", "-c"])
    status = consent_checked(ctx, dumpsys, "CHECKIN MEMINFO", ["meminfo", "--checkin"])
    if status != RunStatus.OK:
        return status
    dumpsys("CHECKIN NETSTATS", ["netstats", "--checkin"])
    dumpsys("CHECKIN PROCSTATS", ["procstats", "-c"])
    dumpsys("CHECKIN USAGESTATS", ["usagestats", "-c"])
    dumpsys("CHECKIN PACKAGE", ["package", "--checkin"])

    for header, title, args in (
        ("Running Application Activities", "APP ACTIVITIES", ["activity", "-v", "all"]),
        (
            "Running Application Services (platform)",
            "APP SERVICES PLATFORM",
            ["activity", "service", "all-platform-non-critical"],
        ),
        (
            "Running Application Services (non-platform)",
            "APP SERVICES NON-PLATFORM",
            ["activity", "service", "all-non-platform"],
        ),
        (
            "Running Application Providers (platform)",
            "APP PROVIDERS PLATFORM",
            ["activity", "provider", "all-platform"],
        ),
        (
            "Running Application Providers (non-platform)",
            "APP PROVIDERS NON-PLATFORM",
            ["activity", "provider", "all-non-platform"],
        ),
    ):
        runner.section(header)
        dumpsys(title, args, DUMPSYS_COMPONENTS_OPTIONS)

    runner.section("Dropbox crashes")
    dumpsys("DROPBOX SYSTEM SERVER CRASHES", ["dropbox", "-p", "system_server_crash"])
    dumpsys("DROPBOX SYSTEM APP CRASHES", ["dropbox", "-p", "system_app_crash"])

    progress = ctx.progress
    runner.section(
        f"Final progress (pid {ctx.pid}): {progress.progress}/{progress.max} "
        f"(estimated {progress.initial_max})",
    )
    runner.section(f"dumpstate: done (id {ctx.id})")
    runner.section("Obtaining statsd metadata")
    dumpsys("STATSDSTATS", ["stats", "--metadata"])

    return consent_checked(ctx, dump_incident_report, ctx)


def second_log_capture(ctx: "RunContext") -> RunStatus:
    since = ctx.logcat_since if ctx.logcat_since is not None else ctx.now
    do_system_logcat(ctx, since)
    return RunStatus.OK


def dump_board(ctx: "RunContext") -> None:
    with DurationReporter("dumpstate_board()"):
        ctx.runner.section("Board")
        ctx.runner.flush()
        if ctx.archive is None:
            LOGGER.debug("Not dumping board info because it's not a zipped bugreport")
            return
        ctx.board.collect(ctx.internal_dir, ctx.archive)
        ctx.runner.write("*** See dumpstate-board.txt entry ***\n")


def radio_common(ctx: "RunContext") -> RunStatus:
    dump_iptables(ctx)
    add_dir(ctx, LOGPERSIST_DATA_DIR, False)
    status = drop_privileges(ctx)
    if status != RunStatus.OK:
        return status
    ctx.runner.run_command("KERNEL LOG (dmesg)", ["dmesg"])
    do_logcat(ctx)
    dump_packet_stats(ctx)
    do_kmsg(ctx)
    dump_ip_addr_and_rules(ctx)
    dump_route_tables(ctx)
    dump_hals(ctx)
    ctx.dumpsys.run_service(
        "NETWORK DIAGNOSTICS", ["connectivity", "--diag"], CommandOptions(timeout=10.0)
    )
    return RunStatus.OK


def telephony_only(ctx: "RunContext") -> RunStatus:
    with DurationReporter("DUMPSTATE"):
        status = radio_common(ctx)
        if status != RunStatus.OK:
            return status
        runner = ctx.runner
        dumpsys = ctx.dumpsys.run_service
        runner.run_command("SYSTEM PROPERTIES", ["getprop"])
        runner.section("Android Framework Services")
        for service in ("connectivity", "connmetrics", "netd", "carrier_config", "wifi"):
            dumpsys("DUMPSYS", [service], DUMPSYS_90, 10.0)
        dumpsys("BATTERYSTATS", ["batterystats"], DUMPSYS_90, 10.0)
        runner.section("Running Application Services")
        dumpsys("TELEPHONY SERVICES", ["activity", "service", "TelephonyDebugService"])
        runner.section("Running Application Services (non-platform)")
        dumpsys(
            "APP SERVICES NON-PLATFORM",
            ["activity", "service", "all-non-platform"],
            DUMPSYS_COMPONENTS_OPTIONS,
        )
        runner.section("Checkins")
        dumpsys("CHECKIN BATTERYSTATS", ["batterystats", "-c"])
        runner.section(f"dumpstate: done (id {ctx.id})")
    dump_board(ctx)
    return RunStatus.OK


def wifi_only(ctx: "RunContext") -> RunStatus:
    with DurationReporter("DUMPSTATE"):
        status = radio_common(ctx)
        if status != RunStatus.OK:
            return status
        ctx.runner.section("Android Framework Services")
        ctx.dumpsys.run_service("DUMPSYS", ["connectivity"], DUMPSYS_90, 10.0)
        ctx.dumpsys.run_service("DUMPSYS", ["wifi"], DUMPSYS_90, 10.0)
        ctx.runner.section(f"dumpstate: done (id {ctx.id})")
    return RunStatus.OK
