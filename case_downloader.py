# AAO Offline - a tool for playing Ace Attorney Online cases offline.
# Copyright (C) 2025 DragonsWho <dragonswho@gmail.com>
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Lesser General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with this program; if not, see <https://www.gnu.org/licenses/>.


# case_downloader.py

import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

from asset_fetcher import Fetcher, NameRegistry
from asset_graph import AssetGraph
from case_bundler import Bundler, index_location, output_names
from case_models import (
    CASE_CANCELLED, CASE_FAILED, CASE_PARTIAL, CASE_SUCCEEDED, AssetRecord, CaseManifest, CaseResult, RunReport,
)
from case_resolver import CaseResolver
from case_rewriter import Rewriter
from download_config import RunConfig
from download_errors import AAOfflineError, BundleError, RunCancelled, SequenceError
from http_client import HttpClient
from player_template import PlayerTemplate
from sequence_linker import SequenceLinker
from watermark_stripper import WatermarkStripper

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, Dict[str, Any]], None]


class CaseDownloader:
    """
    One download run: resolves the requested cases, then fetches, rewrites and
    bundles every case. Nothing is shared with other runs.
    """

    def __init__(
        self,
        target_base_save_dir: str,
        config: Optional[RunConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config or RunConfig()
        self.output_root = Path(target_base_save_dir)
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self._owns_session = session is None
        self.client = HttpClient(
            concurrency_limit=self.config.concurrency_limit,
            retry=self.config.retry,
            timeout=self.config.timeout,
            session=session,
            sleep=sleep,
            cancel_event=cancel_event,
            http_handling=self.config.http_handling,
            proxy=self.config.proxy,
        )
        self.resolver = CaseResolver(self.client, language=self.config.language)
        self.rewriter = Rewriter(disable_html5_audio=self.config.disable_html5_audio)
        self.bundler = Bundler(
            self.output_root,
            mode=self.config.output_mode,
            asset_policy=self.config.asset_policy,
            language=self.config.language,
            userscripts=self.config.userscripts,
            replace_existing=self.config.replace_existing,
        )
        self.stripper = WatermarkStripper() if self.config.remove_watermarks else None

    # --- Progress ---

    def _notify_progress(self, type_str: str, data: Dict[str, Any]) -> None:
        if self.progress_callback:
            try:
                self.progress_callback(type_str, data)
            except Exception as e_prog:
                print(f"Error in progress_callback {type_str}: {e_prog}", file=sys.stderr)

    def _resource_progress_cb_adapter(self, type_str_cb: str, url_str_cb: str) -> None:
        self._notify_progress("progress_resource", {"type": type_str_cb, "url": url_str_cb})

    # --- Resolution ---

    def _resolve_many(self, case_inputs: Iterable[str]) -> List[Tuple[str, Optional[CaseManifest], Optional[str]]]:
        inputs = list(case_inputs)
        if not inputs:
            return []
        outcomes = []
        with ThreadPoolExecutor(max_workers=min(len(inputs), self.config.concurrency_limit),
                                thread_name_prefix="CaseResolver") as executor:
            futures = {executor.submit(self.resolver.resolve, case_input): case_input for case_input in inputs}
            for future in as_completed(futures):
                case_input = futures[future]
                try:
                    outcomes.append((case_input, future.result(), None))
                except RunCancelled:
                    raise
                except AAOfflineError as e_case:
                    self._notify_progress("error", {"message": f"Could not resolve {case_input}: {e_case}"})
                    outcomes.append((case_input, None, str(e_case)))
        return outcomes

    def resolve_batch(self, case_inputs: Iterable[str]) -> Tuple[Dict[int, CaseManifest], List[CaseResult]]:
        manifests: Dict[int, CaseManifest] = {}
        failures: List[CaseResult] = []

        def _collect(outcomes):
            for case_input, manifest, error in outcomes:
                if manifest is None:
                    failures.append(CaseResult(case_input=case_input, status=CASE_FAILED, error=error))
                elif manifest.case_id in manifests:
                    logger.info("Case %d requested more than once, downloading it once", manifest.case_id)
                else:
                    manifests[manifest.case_id] = manifest
                    self._notify_progress("status", {"message": f"Resolved case {manifest.case_id}: {manifest.title}"})

        _collect(self._resolve_many(case_inputs))

        if self.config.sequence_mode == "every":
            attempted = set(manifests)
            while True:
                missing = sorted({case_id for m in manifests.values() for case_id in m.sequence_ids} - attempted)
                if not missing:
                    break
                attempted.update(missing)
                self._notify_progress("status", {"message": f"Adding {len(missing)} case(s) of the sequence"})
                outcomes = self._resolve_many([str(case_id) for case_id in missing])
                for case_input, manifest, error in outcomes:
                    if manifest is None:
                        logger.warning("%s", SequenceError(f"Sequence case {case_input} could not be resolved: {error}"))
                _collect(outcomes)
        return manifests, failures

    # --- Per case ---

    def process_case(self, manifest: CaseManifest, template: PlayerTemplate, linker: SequenceLinker,
                     name: str) -> CaseResult:
        result = CaseResult(case_input=str(manifest.case_id), case_id=manifest.case_id, title=manifest.title)
        self._notify_progress("status", {"message": f"Collecting assets of case {manifest.case_id}: {manifest.title}"})

        graph = AssetGraph(template, self.config.extra_asset_hosts)
        references = graph.enumerate(manifest)
        fetcher = Fetcher(
            self.client,
            NameRegistry(),
            post_processors=[self.stripper] if self.stripper else [],
            progress_callback=self._resource_progress_cb_adapter,
        )

        records: List[AssetRecord] = []
        for record in fetcher.fetch_all(graph.references, self.config.concurrency_limit):
            records.append(record)
            self._notify_progress("progress_overall", {
                "case_id": manifest.case_id, "processed": len(records), "total_expected": len(references),
                "current_url": record.url, "success": record.ok,
            })
        result.missing_assets = [r.error for r in sorted(records, key=lambda r: r.url) if not r.ok]
        for error in result.missing_assets:
            self._notify_progress("warning", {"message": f"Case {manifest.case_id}: missing asset {error}"})

        documents = self.rewriter.rewrite(graph.documents, references, records, self.config.output_mode)
        links = linker.resolve(linker.detect(manifest, graph.documents.scripts))
        documents = linker.apply(documents, links)
        result.warnings.extend(f"Case {l.target_id} is not part of this download; continuing will use the live site"
                               for l in links if not l.linked and l.target_id not in linker.locations)

        output = self.bundler.build(manifest, documents, records, name)
        result.output_path = str(output.write(cancelled=lambda: self.client.cancelled))
        result.status = CASE_PARTIAL if result.missing_assets else CASE_SUCCEEDED
        return result

    def _run_case(self, manifest: CaseManifest, template: PlayerTemplate, linker: SequenceLinker,
                  name: str) -> CaseResult:
        try:
            return self.process_case(manifest, template, linker, name)
        except RunCancelled as e_cancel:
            return CaseResult(str(manifest.case_id), manifest.case_id, manifest.title, CASE_CANCELLED, error=str(e_cancel))
        except BundleError as e_bundle:
            self._notify_progress("error", {"message": f"Case {manifest.case_id}: {e_bundle}"})
            return CaseResult(str(manifest.case_id), manifest.case_id, manifest.title, CASE_FAILED,
                              error=str(e_bundle))
        except Exception as e_case:
            logger.exception("Case %d failed", manifest.case_id)
            self._notify_progress("error", {"message": f"Case {manifest.case_id} failed: {e_case}"})
            return CaseResult(str(manifest.case_id), manifest.case_id, manifest.title, CASE_FAILED, error=str(e_case))

    # --- Run ---

    def run(self, case_inputs: Iterable[str]) -> RunReport:
        report = RunReport()
        try:
            report = self._run(list(case_inputs))
        except RunCancelled:
            report.cancelled = True
        finally:
            if self._owns_session:
                self.client.close()

        if self.client.cancelled:
            report.cancelled = True
        summary = report.summary()
        self._notify_progress("finished", {
            "index_html_paths": [c.output_path for c in report.cases if c.output_path],
            "status": report.status,
            "summary_message": summary,
        })
        logger.info("%s", summary)
        return report

    def _run(self, case_inputs: List[str]) -> RunReport:
        report = RunReport()
        self._notify_progress("status", {"message": f"Starting download of {len(case_inputs)} case(s)"})
        manifests, failures = self.resolve_batch(case_inputs)
        report.cases.extend(failures)
        if not manifests:
            return report

        try:
            template = self.resolver.template(self.config.player_version)
        except AAOfflineError as e_template:
            message = f"Could not fetch player {self.config.version}: {e_template}"
            self._notify_progress("error", {"message": message})
            for manifest in sorted(manifests.values(), key=lambda m: m.case_id):
                report.cases.append(CaseResult(str(manifest.case_id), manifest.case_id, manifest.title,
                                               CASE_FAILED, error=message))
            return report

        names = output_names(manifests.values())
        locations = {case_id: index_location(name, self.config.output_mode) for case_id, name in names.items()}
        linker = SequenceLinker(manifests, locations)

        ordered = sorted(manifests.values(), key=lambda m: m.case_id)
        with ThreadPoolExecutor(max_workers=min(len(ordered), self.config.concurrency_limit),
                                thread_name_prefix="CaseWorker") as executor:
            futures = {executor.submit(self._run_case, m, template, linker, names[m.case_id]): m for m in ordered}
            case_results = {}
            for future in as_completed(futures):
                manifest = futures[future]
                case_results[manifest.case_id] = future.result()
                self._notify_progress("status", {"message": f"Case {manifest.case_id} "
                                                            f"{case_results[manifest.case_id].status}"})
        report.cases.extend(case_results[m.case_id] for m in ordered)
        return report


def start_case_download(
    case_inputs: Iterable[str],
    target_base_save_dir_str: str,
    config: Optional[RunConfig] = None,
    progress_callback: Optional[ProgressCallback] = None,
    cancel_event: Optional[threading.Event] = None,
) -> RunReport:
    downloader = CaseDownloader(target_base_save_dir_str, config, progress_callback, cancel_event)
    return downloader.run(case_inputs)
