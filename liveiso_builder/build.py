from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .assemble import BootImageBuilder, FilesystemAssembler, write_disk_metadata
from .build_config import BuildConfig, build_config_from_raw, load_build_config
from .build_steps import BuildCtx, build_stages
from .errors import (
    AssemblyError,
    BuildInterrupted,
    ConfigValidationError,
    StageFailure,
)
from .lib.chroot import ChrootExecutor
from .lib.command import run_cmd
from .lib.mounts import CommandMountBackend, MountBackend, ResourceGuard, stale_mounts_under
from .logging_utils import DEFAULT_LOG_PATH, LOG_FILE_NAME, LOG_LEVELS, configure_logging
from .package_sets import PackageSets, load_package_sets
from .pipeline import PipelinePhase, Stage, StageRecord, StageRunner

logger = logging.getLogger(__name__)


DEFAULT_BUILD_CONFIG = "build_config.yaml"

HOST_TOOLS = (
    "debootstrap",
    "chroot",
    "mount",
    "umount",
    "mksquashfs",
    "mkfs.fat",
    "grub-mkstandalone",
    "xorriso",
)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


def check_host(cfg: BuildConfig) -> None:
    """Refuse to start unless we are root and every external tool is present."""

    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise ConfigValidationError("This build must be run as root")
    tools = list(HOST_TOOLS)
    if cfg.custom_debs:
        tools.append("dpkg-deb")
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        raise ConfigValidationError(
            f"Missing host tools: {', '.join(missing)} "
            "(install debootstrap squashfs-tools xorriso dosfstools grub-efi-amd64-bin grub-common)"
        )


class TerminationSignals:
    """Turn SIGTERM/SIGHUP into BuildInterrupted so teardown always runs."""

    def __init__(self) -> None:
        self._previous: Dict[int, Any] = {}
        self.deferred = False

    def _raise(self, signum, frame) -> None:
        if self.deferred:
            self._log_only(signum, frame)
            return
        raise BuildInterrupted(signum)

    @staticmethod
    def _log_only(signum, frame) -> None:
        logger.warning("Signal %s received during teardown; finishing cleanup first", signum)

    def _set_all(self, handler, signums) -> None:
        for signum in signums:
            try:
                previous = signal.signal(signum, handler)
            except ValueError:
                # Not the main thread; the caller owns signal handling.
                logger.debug("Cannot install handler for signal %s outside the main thread", signum)
                continue
            self._previous.setdefault(signum, previous)

    def install(self) -> None:
        self._set_all(self._raise, TERMINATION_SIGNALS)

    def defer(self) -> None:
        self.deferred = True
        self._set_all(self._log_only, (*TERMINATION_SIGNALS, signal.SIGINT))

    def restore(self) -> None:
        for signum, previous in self._previous.items():
            signal.signal(signum, previous)
        self._previous.clear()


class PipelineOrchestrator:
    """Owns the work directory, the resource guard and the final ISO path."""

    def __init__(
        self,
        cfg: BuildConfig,
        *,
        package_sets: Optional[PackageSets] = None,
        mount_backend: Optional[MountBackend] = None,
        executor: Optional[ChrootExecutor] = None,
        stages_factory: Callable[[BuildCtx], List[Stage]] = build_stages,
    ) -> None:
        self.cfg = cfg
        self.package_sets = package_sets or load_package_sets()
        self.guard = ResourceGuard(backend=mount_backend or CommandMountBackend())
        self.executor = executor or ChrootExecutor()
        self.stages_factory = stages_factory
        self.phase = PipelinePhase.IDLE
        self.records: List[StageRecord] = []
        self.error: Optional[BaseException] = None

    def _transition(self, phase: PipelinePhase) -> None:
        logger.info("Pipeline phase %s -> %s", self.phase.name, phase.name)
        self.phase = phase

    def prepare_workspace(self) -> None:
        work = self.cfg.work_dir
        if work.exists():
            if not self.cfg.force_clean:
                raise ConfigValidationError(
                    f"Work directory {work} already exists (unclean previous build?); "
                    "rerun with --force-clean to remove it"
                )
            logger.warning("Work directory %s exists from a previous build; force-cleaning it", work)
            for mount_point in stale_mounts_under(work):
                logger.warning("Unmounting stale mount %s", mount_point)
                run_cmd(["umount", "-lf", str(mount_point)], check=False)
            still = stale_mounts_under(work)
            if still:
                raise ConfigValidationError(
                    f"Cannot clean {work}: still mounted: {', '.join(map(str, still))}"
                )
            shutil.rmtree(work)
        self.cfg.chroot_dir.mkdir(parents=True)
        self.cfg.iso_dir.mkdir(parents=True)

    def remove_work_dir(self) -> None:
        work = self.cfg.work_dir
        if not work.exists():
            return
        # Deleting through a live /dev or /proc mount would damage the host.
        still = stale_mounts_under(work)
        if still:
            logger.error("Not removing %s: still mounted: %s", work, ", ".join(map(str, still)))
            return
        try:
            shutil.rmtree(work)
        except OSError as e:
            logger.error("Failed to remove work directory %s: %s", work, e)
            return
        logger.info("Removed work directory %s", work)

    def _assemble(self, ctx: BuildCtx) -> Path:
        if ctx.mounts or self.guard.held:
            raise AssemblyError("assemble", "virtual filesystems are still mounted under the root tree")
        root, staging = self.cfg.chroot_dir, self.cfg.iso_dir
        write_disk_metadata(staging, self.cfg)
        FilesystemAssembler(self.cfg, self.executor).assemble(root, staging)
        artifact = BootImageBuilder(self.cfg, self.guard).build(root, staging)
        return artifact.iso_path

    def run(self) -> Path:
        cfg = self.cfg
        logger.info("Starting live ISO build: release=%s arch=%s mirror=%s", cfg.release, cfg.arch, cfg.mirror)
        check_host(cfg)
        self.prepare_workspace()

        ctx = BuildCtx(cfg=cfg, package_sets=self.package_sets, executor=self.executor, guard=self.guard)
        signals = TerminationSignals()
        signals.install()
        try:
            runner = StageRunner(self.stages_factory(ctx), on_phase=self._transition)
            self.records = runner.records
            runner.run(ctx)
            for record in runner.ignored_failures:
                logger.warning("Stage %s failed but was ignorable: %s", record.name, record.error)

            self._transition(PipelinePhase.ASSEMBLING)
            iso_path = self._assemble(ctx)
            signals.defer()
            self._transition(PipelinePhase.DONE)
            return iso_path
        except BaseException as e:
            # Defer before the finally block so a late signal cannot skip teardown.
            signals.defer()
            self.error = e
            self._transition(PipelinePhase.FAILED)
            raise
        finally:
            signals.defer()
            try:
                self.guard.release_all()
                self.remove_work_dir()
            finally:
                signals.restore()


def write_build_report(path: str, orchestrator: PipelineOrchestrator) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    report = {
        "release": orchestrator.cfg.release,
        "arch": orchestrator.cfg.arch,
        "phase": orchestrator.phase.name,
        "error": str(orchestrator.error) if orchestrator.error else None,
        "release_warnings": list(orchestrator.guard.warnings),
        "stages": [r.to_dict() for r in orchestrator.records],
    }
    p.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def _load_config(args: argparse.Namespace) -> BuildConfig:
    if Path(args.config).exists():
        cfg = load_build_config(args.config)
    elif args.config == DEFAULT_BUILD_CONFIG:
        cfg = build_config_from_raw({})
    else:
        raise ConfigValidationError(f"Build config not found: {args.config}")

    return cfg.with_overrides(
        release=args.release,
        arch=args.arch,
        work_dir=Path(args.work_dir) if args.work_dir else None,
        output_dir=Path(args.output_dir) if args.output_dir else None,
        force_clean=True if args.force_clean else None,
    )


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="liveiso-build", description="Build a UEFI-bootable live Ubuntu ISO")
    p.add_argument("--config", default=DEFAULT_BUILD_CONFIG)
    p.add_argument("--release", default=None, help="Ubuntu series (e.g. noble, plucky)")
    p.add_argument("--arch", default=None, help="Target architecture (amd64|arm64)")
    p.add_argument("--work-dir", default=None)
    p.add_argument("--output-dir", default=None)
    p.add_argument("--log", default=None, help="Build log path (default: <logs_dir>/liveiso-build.log)")
    p.add_argument(
        "--log-level",
        default="INFO",
        choices=LOG_LEVELS,
        help="Console verbosity; the build log always records DEBUG",
    )
    p.add_argument("--report", default=None, help="Write a JSON stage report here")
    p.add_argument("--force-clean", action="store_true", help="Remove a stale work directory first")

    args = p.parse_args(argv)
    level = getattr(logging, args.log_level)

    try:
        cfg = _load_config(args)
    except ConfigValidationError as e:
        configure_logging(log_path=args.log or DEFAULT_LOG_PATH, level=level)
        logger.error("Configuration error: %s", e)
        return 2
    configure_logging(log_path=args.log or str(cfg.logs_dir / LOG_FILE_NAME), level=level)

    orchestrator: Optional[PipelineOrchestrator] = None
    try:
        orchestrator = PipelineOrchestrator(cfg)
        iso_path = orchestrator.run()
    except ConfigValidationError as e:
        logger.error("Configuration error: %s", e)
        return 2
    except StageFailure as e:
        logger.error("Build failed in stage %s: %s", e.stage_name, e.cause)
        return 1
    except AssemblyError as e:
        logger.error("Assembly failed: %s", e)
        return 3
    except BuildInterrupted as e:
        logger.error("%s; resources released", e)
        return 128 + e.signum
    except KeyboardInterrupt:
        logger.error("Build interrupted; resources released")
        return 130
    finally:
        if args.report and orchestrator is not None:
            write_build_report(args.report, orchestrator)

    logger.info("ISO build completed: %s", iso_path)
    logger.info("Write to USB: dd if=%s of=/dev/sdX bs=1M status=progress", iso_path)
    logger.info("Live user: %s (passwordless sudo)", cfg.live_user.name)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
