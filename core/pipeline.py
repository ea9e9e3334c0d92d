# core/pipeline.py – High-level DR measurement pipeline

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, List, Optional

from core.aggregator import aggregate, compute_plot_bounds
from core.analysis import analyze_patches_two_pass, build_curve, calculate_dynamic_range
from core.calibration import calibrate
from core.errors import (
    CalibrationError,
    DynaRangeError,
    FailureKind,
    GeometryError,
    RawDecodeError,
    RunStatus,
)
from core.geometry import (
    CornerDetector,
    compute_chart_geometry,
    detect_chart_corners,
    order_corners,
    prepare_chart_image,
)
from core.loader import load_raw_frame, render_preview
from core.models import Calibration, ChartGeometry, FileResult, RawFrame, RunReport
from core.plotting import ArtifactKind, write_artifact
from core.preanalysis import pre_analyze, resolve_sensor_mpx, select_reference
from core.report_gen import (
    csv_fieldnames,
    csv_rows,
    report_csv,
    save_plot_bundles_json,
    save_summary_txt,
)
from utils.config import Configuration
from utils.logger import apply_logging_config, log_memory_usage
from utils.naming import (
    NamingContext,
    channel_tag,
    crop_dump_filename,
    debug_filename,
    generate_command,
    individual_plot_filename,
    patches_filename,
    plot_title,
    summary_plot_filename,
)

__all__ = ["run_pipeline", "process_file"]

pipeline_lock = threading.Lock()

FileDone = Callable[[FileResult], None]


class _Fatal(Exception):
    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind


def _cancelled(cancel: Optional[threading.Event]) -> bool:
    return cancel is not None and cancel.is_set()


# ───────────────────────────── per-file work


def process_file(
    path: Path,
    order: int,
    config: Configuration,
    calibration: Calibration,
    geometry: ChartGeometry,
    sensor_mpx: float,
    *,
    cancel: Optional[threading.Event] = None,
    write_debug: bool = False,
) -> Optional[FileResult]:
    """Geometry → patches → curve → fit for one file.

    Returns ``None`` when the run was cancelled before the file finished.
    """
    if _cancelled(cancel):
        return None
    result = FileResult(path=path, order=order)
    try:
        frame = load_raw_frame(path, config.camera_name)
    except RawDecodeError as exc:
        logging.warning("Skipping %s: %s", path.name, exc)
        result.failures.append((FailureKind.RAW_DECODE, str(exc)))
        return result

    naming = NamingContext.from_config(config)
    for channel in config.channels:
        tag = channel_tag(channel)
        try:
            image = prepare_chart_image(frame, calibration, geometry, channel)
        except GeometryError as exc:
            logging.warning("%s [%s]: %s", path.name, tag, exc)
            result.failures.append((FailureKind.GEOMETRY, str(exc)))
            continue

        patches = analyze_patches_two_pass(
            image,
            config.grid_rows,
            config.grid_cols,
            config.patch_ratio,
            config.snr_thresholds_db,
            snr_floor_db=config.snr_floor_db,
            permissive_floor_db=config.permissive_snr_floor_db,
            reanalyze=config.reanalyze_low_snr,
            draw_overlay=write_debug,
        )
        if write_debug:
            _write_file_debug(
                config, naming, path, tag, image, patches, channel is config.channels[0]
            )
        del image

        curve = build_curve(
            patches.samples,
            filename=path.name,
            channel_tag=tag,
            camera_model=frame.camera_model,
            iso=frame.iso,
            sensor_mpx=sensor_mpx,
            target_mpx=config.dr_normalization_mpx,
        )
        if _cancelled(cancel):
            return None
        fitted, dr_results = calculate_dynamic_range(
            curve,
            config.snr_thresholds_db,
            order=config.poly_order,
            model=config.fit_model,
            normalized_to_mpx=config.dr_normalization_mpx,
        )
        if not fitted.has_fit:
            result.failures.append(
                (
                    FailureKind.INSUFFICIENT_DATA,
                    f"{tag}: {curve.patches_used} valid patches for order {config.poly_order}",
                )
            )
        for r in dr_results:
            if r.dr_ev is None and fitted.has_fit:
                kind = FailureKind.NO_CROSSING if r.sufficient else FailureKind.INSUFFICIENT_DATA
                result.failures.append((kind, f"{tag}: no DR at {r.threshold_db:g} dB"))
        result.curves.append(fitted)
        result.results.extend(dr_results)
        logging.info(
            "%s [%s]: %d patches, DR %s",
            path.name,
            tag,
            curve.patches_used,
            ", ".join(
                f"{r.threshold_db:g}dB={'N/A' if r.dr_ev is None else f'{r.dr_ev:.2f}'}"
                for r in dr_results
            ),
        )
    return result


def _write_file_debug(config, naming, path, tag, image, patches, with_overlay) -> None:
    out_dir = config.output_dir
    if with_overlay and patches.overlay is not None:
        write_artifact(
            ArtifactKind.DEBUG_PATCHES,
            out_dir / patches_filename(naming),
            patches.overlay,
            patches.max_pixel_value,
        )
    write_artifact(ArtifactKind.DEBUG_CROP, out_dir / crop_dump_filename(path.name, tag), image)


# ───────────────────────────── global phases


def _metadata_frame(config: Configuration) -> Optional[RawFrame]:
    if not config.calibrate_from_metadata:
        return None
    for p in config.input_files:
        try:
            return load_raw_frame(p, config.camera_name)
        except RawDecodeError as exc:
            logging.warning("No metadata from %s: %s", p, exc)
    return None


def _reference_geometry(
    path: Path,
    config: Configuration,
    calibration: Calibration,
    detector: CornerDetector,
    naming: NamingContext,
) -> ChartGeometry:
    try:
        frame = load_raw_frame(path, config.camera_name)
    except RawDecodeError as exc:
        raise _Fatal(FailureKind.RAW_DECODE, f"reference frame: {exc}") from exc

    if config.chart_corners is not None:
        corners = order_corners(config.chart_corners)
        logging.info("Using configured chart corners %s", corners)
    else:
        corners = detector(frame, calibration)
        if corners is None:
            raise GeometryError(f"chart corners not found in reference {path.name}")
        logging.info("Detected chart corners %s", corners)
    geometry = compute_chart_geometry(corners)

    if config.debug_images:
        try:
            preview = render_preview(path, frame)
        except RawDecodeError as exc:
            logging.warning("No corner overlay: %s", exc)
        else:
            write_artifact(
                ArtifactKind.DEBUG_CORNERS,
                config.output_dir / debug_filename(naming, "corners"),
                preview,
                corners,
            )
    return geometry


def _write_reports(report: RunReport, config: Configuration, naming: NamingContext) -> None:
    csv_path = config.csv_path
    multi = len({c.channel_tag for c in report.curves}) > 1
    report_csv(
        csv_rows(report, config.snr_thresholds_db),
        csv_path,
        csv_fieldnames(config.snr_thresholds_db, multi),
    )
    report.artifacts["csv"] = csv_path
    logging.info("Results written to %s", csv_path)

    out_dir = config.output_dir
    out_dir.mkdir(parents=True, exist_ok=True)
    if config.report_summary:
        save_summary_txt(report, config, out_dir / "summary.txt")
        report.artifacts["summary"] = out_dir / "summary.txt"
    if config.plot_bundle:
        save_plot_bundles_json(report, out_dir / "snr_curves.json")
        report.artifacts["plot_bundle"] = out_dir / "snr_curves.json"

    if config.plot_mode == "none" or report.status is RunStatus.CANCELLED:
        return
    footer = generate_command(config) if config.plot_mode == "plot+command" else None
    curves = report.curves
    results = report.results
    summary_path = out_dir / summary_plot_filename(naming)
    write_artifact(
        ArtifactKind.PLOT_SUMMARY,
        summary_path,
        curves,
        results,
        report.bounds,
        config.snr_thresholds_db,
        title=plot_title(naming),
        footer=footer,
    )
    report.artifacts["plot_summary"] = summary_path
    for curve in curves:
        if not curve.has_fit:
            continue
        path = out_dir / individual_plot_filename(
            naming, curve.iso, curve.filename, curve.channel_tag
        )
        write_artifact(
            ArtifactKind.PLOT_INDIVIDUAL,
            path,
            [curve],
            results,
            report.bounds,
            config.snr_thresholds_db,
            title=plot_title(naming, curve.iso),
            footer=footer,
        )
        report.artifacts[f"plot_{curve.filename}_{curve.channel_tag}"] = path


def _run(
    config: Configuration,
    report: RunReport,
    progress: Optional[Callable[[int], None]],
    status: Optional[Callable[[str], None]],
    cancel: Optional[threading.Event],
    file_done: Optional[FileDone],
    detector: CornerDetector,
) -> None:
    naming = NamingContext.from_config(config)

    def step(pct: int, msg: str) -> None:
        logging.info(msg)
        if status:
            status(msg)
        if progress:
            progress(pct)

    # 1. calibration
    step(0, "Calibrating...")
    calibration = calibrate(config, _metadata_frame(config))
    report.calibration = calibration
    if _cancelled(cancel):
        report.status = RunStatus.CANCELLED
        return

    # 2. pre-analysis and reference
    step(10, "Pre-analyzing inputs...")
    ordered, skipped = pre_analyze(
        config.input_files,
        calibration,
        max_workers=config.max_workers,
        camera_model=config.camera_name,
    )
    report.skipped.extend(skipped)
    ref_idx = select_reference(ordered)
    if ref_idx is None:
        raise _Fatal(FailureKind.NO_OUTPUT, "no input file could be decoded")
    reference = ordered[ref_idx]
    report.reference = reference.path
    report.sensor_mpx = resolve_sensor_mpx(config.sensor_resolution_mpx, reference)
    logging.info("Sensor resolution: %.2f Mpx", report.sensor_mpx)
    log_memory_usage("after pre-analysis: ")

    # 3. geometry on the reference frame
    step(20, "Locating chart...")
    geometry = _reference_geometry(reference.path, config, calibration, detector, naming)

    # 4. per-file analysis
    step(25, "Analyzing files...")
    collected: List[FileResult] = []
    total = len(ordered)
    with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
        futures = {
            pool.submit(
                process_file,
                res.path,
                idx,
                config,
                calibration,
                geometry,
                report.sensor_mpx,
                cancel=cancel,
                write_debug=config.debug_images and idx == ref_idx,
            ): (idx, res.path)
            for idx, res in enumerate(ordered)
        }
        for fut in as_completed(futures):
            if _cancelled(cancel):
                break
            idx, path = futures[fut]
            try:
                fr = fut.result()
            except Exception as exc:
                logging.exception("Unexpected error while processing %s", path.name)
                fr = FileResult(path=path, order=idx)
                fr.failures.append((FailureKind.NO_OUTPUT, f"unexpected error: {exc}"))
            if fr is None:
                continue
            collected.append(fr)
            if file_done:
                file_done(fr)
            if progress:
                progress(25 + int(65 * len(collected) / total))
            if _cancelled(cancel):
                break
        if _cancelled(cancel):
            for fut in futures:
                fut.cancel()
    log_memory_usage("after file analysis: ")

    # 5. aggregation
    report.files = aggregate(collected)
    report.bounds = compute_plot_bounds(report.curves)
    if _cancelled(cancel):
        report.status = RunStatus.CANCELLED
        logging.info("Run cancelled after %d file(s)", len(report.files))
    elif not report.processed_files:
        raise _Fatal(FailureKind.NO_OUTPUT, "no file produced SNR data")

    # 6. reporting
    step(90, "Writing reports...")
    _write_reports(report, config, naming)
    step(100, "Done")


def run_pipeline(
    config: Configuration,
    *,
    progress: Optional[Callable[[int], None]] = None,
    status: Optional[Callable[[str], None]] = None,
    cancel: Optional[threading.Event] = None,
    file_done: Optional[FileDone] = None,
    corner_detector: Optional[CornerDetector] = None,
) -> RunReport:
    """Run the full measurement and return a structured :class:`RunReport`.

    Measurement failures never escape: fatal ones set ``status`` to
    ``FAILED`` with ``fatal_error``, per-file ones are listed on each
    :class:`FileResult`.
    """
    apply_logging_config(config)
    logging.info("Pipeline start: %d input file(s)", len(config.input_files))
    report = RunReport()
    detector = corner_detector or detect_chart_corners
    with pipeline_lock:
        try:
            log_memory_usage("start: ")
            _run(config, report, progress, status, cancel, file_done, detector)
        except CalibrationError as exc:
            logging.error("Calibration failed: %s", exc)
            report.status = RunStatus.FAILED
            report.fatal_error = (FailureKind.CALIBRATION, str(exc))
        except GeometryError as exc:
            logging.error("Chart geometry failed: %s", exc)
            report.status = RunStatus.FAILED
            report.fatal_error = (FailureKind.GEOMETRY, str(exc))
        except _Fatal as exc:
            logging.error("Pipeline failed: %s", exc)
            report.status = RunStatus.FAILED
            report.fatal_error = (exc.kind, str(exc))
        except DynaRangeError as exc:
            logging.error("Pipeline failed: %s", exc)
            report.status = RunStatus.FAILED
            report.fatal_error = (FailureKind.NO_OUTPUT, str(exc))
        except Exception:
            logging.exception("Pipeline crashed")
            raise
    logging.info("Pipeline end: status=%s", report.status.value)
    return report
