"""
Discovery worker.

Turns a project's source paths into work items and batches:

1. Drop paths matching the project's ignore patterns
2. Fetch each page's published content and collect the fragments it
   references, plus the fragments those reference (one level of nesting)
3. Classify every item: it needs processing when its content mentions the
   experience, carries graybox styles or the graybox domain suffix, or
   references fragments; everything else is copied verbatim
4. Partition both groups, write the discovery summary and advance the
   project to ``discovered``
"""

import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

from promorch.partitioner import write_batches
from promorch.schemas import AuditEntry, ItemType, ProjectStatus, WorkItem
from promorch.sequencer import advance_project
from promorch.stages import DISCOVERY
from promorch.utils import handle_extension, is_file_pattern_matched, sanitize_error_message, utcnow
from promorch.workers.base import WorkerContext, WorkerResult, registry

logger = logging.getLogger(__name__)

FRAGMENT_LINK = re.compile(r"<https://[^>]*(?:aem|hlx)\.page[^>]*/fragments/[^>]*>")
DO_NOT_TRANSLATE_MARKER = "#_dnt"
GRAYBOX_STYLE_MARKER = "gb-"
GRAYBOX_DOMAIN_SUFFIX = "-graybox"
DOCUMENT_SUFFIXES = (".docx", "")


def find_fragment_urls(content: Optional[str]) -> list[str]:
    """Fragment links in page content, without the ``#_dnt`` marker, de-duplicated."""
    if not content:
        return []
    urls: list[str] = []
    for match in FRAGMENT_LINK.findall(content):
        url = match[1:-1].replace(DO_NOT_TRANSLATE_MARKER, "")
        if url not in urls:
            urls.append(url)
    return urls


def fragment_url_to_path(url: str) -> Optional[str]:
    """Source path of a fragment URL (``https://x--y.aem.page/a/fragments/b`` -> ``/a/fragments/b.docx``)."""
    parsed = urlparse(url)
    if not parsed.netloc.endswith(("aem.page", "hlx.page")) or not parsed.path:
        return None
    path = parsed.path
    if "." not in path.rsplit("/", 1)[-1]:
        path = f"{path}.docx"
    return path


def destination_for(source_path: str, experience: Optional[str]) -> str:
    """Promotion target of a graybox path: the experience folder removed."""
    if experience and f"/{experience}" in source_path:
        return source_path.replace(f"/{experience}", "", 1)
    return source_path


def needs_processing(content: Optional[str], experience: Optional[str], has_fragments: bool) -> bool:
    if has_fragments:
        return True
    if not content:
        return False
    return (
        bool(experience and experience in content)
        or GRAYBOX_STYLE_MARKER in content
        or GRAYBOX_DOMAIN_SUFFIX in content
    )


def _source_entry(entry: Any, experience: Optional[str]) -> tuple[str, str, Optional[str]]:
    if isinstance(entry, str):
        return entry, destination_for(entry, experience), None
    source = entry["sourcePath"]
    return source, entry.get("destinationPath") or destination_for(source, experience), entry.get("originalUrl")


class DiscoveryWorker:
    """Project-level worker that builds the batches of a project."""

    name = DISCOVERY.name
    stage = DISCOVERY

    def _fetch(self, ctx: WorkerContext, url: str) -> Optional[str]:
        if ctx.content_client is None:
            return None
        try:
            return ctx.call(lambda: ctx.content_client.fetch_content(url))
        except Exception as e:
            logger.warning(f"Could not fetch content for {url}: {e}")
            return None

    def _is_document(self, path: str) -> bool:
        name = path.rsplit("/", 1)[-1]
        suffix = name[name.rfind("."):] if "." in name else ""
        return suffix in DOCUMENT_SUFFIXES

    def discover(self, ctx: WorkerContext, source_entries: list[Any], params: dict[str, Any]) -> dict[str, Any]:
        """
        Build work items from source entries.

        Returns:
            {"processing": [WorkItem], "non_processing": [WorkItem],
             "ignored": [path], "pages_with_fragments": n, "fragments": n}
        """
        experience = params.get("experienceName")
        ignore = params.get("ignorePatterns") or []
        seen_sources: set[str] = set()
        seen_fragments: set[str] = set()
        result: dict[str, Any] = {
            "processing": [], "non_processing": [], "ignored": [],
            "pages_with_fragments": 0, "fragments": 0,
        }

        def add(item: WorkItem, content: Optional[str], has_fragments: bool) -> None:
            group = "processing" if needs_processing(content, experience, has_fragments) else "non_processing"
            result[group].append(item)

        for entry in source_entries:
            source, destination, original_url = _source_entry(entry, experience)
            if is_file_pattern_matched(source, ignore):
                result["ignored"].append(source)
                continue
            if source in seen_sources:
                continue
            seen_sources.add(source)

            content = None
            if original_url or self._is_document(source):
                content = self._fetch(ctx, original_url or handle_extension(source))
            page_fragments = [u for u in find_fragment_urls(content) if u not in seen_fragments]
            seen_fragments.update(page_fragments)

            fragment_items = []
            for url in page_fragments:
                fragment_content = self._fetch(ctx, url)
                nested = [u for u in find_fragment_urls(fragment_content) if u not in seen_fragments]
                seen_fragments.update(nested)
                fragment_items.append((url, fragment_content, nested, "fragment"))
                for nested_url in nested:
                    fragment_items.append((nested_url, self._fetch(ctx, nested_url), [], "nested_fragment"))

            item = WorkItem(source_path=source, destination_path=destination, md_path=original_url and f"{original_url}.md")
            if page_fragments:
                item = item.annotate(fragments=page_fragments)
                result["pages_with_fragments"] += 1
            add(item, content, bool(page_fragments))

            for url, fragment_content, nested, kind in fragment_items:
                fragment_path = fragment_url_to_path(url)
                if fragment_path is None or fragment_path in seen_sources:
                    continue
                seen_sources.add(fragment_path)
                result["fragments"] += 1
                fragment_item = WorkItem(
                    source_path=fragment_path,
                    destination_path=destination_for(fragment_path, experience),
                    metadata={
                        "type": kind,
                        "fragmentUrl": url,
                        "sourcePage": source,
                        "availability": "Available" if fragment_content is not None else "Missing",
                    },
                    md_path=f"{url}.md",
                )
                if nested:
                    fragment_item = fragment_item.annotate(nestedFragments=nested)
                add(fragment_item, fragment_content, bool(nested))

        return result

    def run(self, ctx: WorkerContext, params: dict[str, Any]) -> WorkerResult:
        project = params["project"]
        result = WorkerResult(worker=self.name, project=project)
        records = ctx.records

        status = records.status(project)
        if status != DISCOVERY.project_in_progress:
            logger.warning(f"discovery: {project} is {status.value if status else 'missing'}, not claimed; skipping")
            result.status = "skipped"
            return result

        logger.info(f"Starting discovery for {project}",
                    extra={"project": project, "stage": self.name, "event": "worker_started"})
        try:
            project_params = records.status_doc(project).get("params") or {}
            found = self.discover(ctx, records.source_paths(project), project_params)

            processing = write_batches(records, project, ItemType.PROCESSING, found["processing"], ctx.chunk_size)
            non_processing = write_batches(records, project, ItemType.NON_PROCESSING, found["non_processing"], ctx.chunk_size)
            summary = {
                "totalFiles": len(found["processing"]) + len(found["non_processing"]),
                "processing": len(found["processing"]),
                "nonProcessing": len(found["non_processing"]),
                "ignored": found["ignored"],
                "pagesWithFragments": found["pages_with_fragments"],
                "fragments": found["fragments"],
                "processingBatches": len(processing),
                "nonProcessingBatches": len(non_processing),
                "timestamp": utcnow().isoformat(),
            }
            records.write_discovery_summary(project, summary)
            result.succeeded = [i.source_path for i in found["processing"] + found["non_processing"]]
            ctx.audit_row(project, "Discovery completed", summary)

            result.advanced = advance_project(
                records, project, DISCOVERY.project_in_progress, DISCOVERY.target,
                AuditEntry(
                    step_name=f"Discovered {summary['totalFiles']} files in "
                              f"{len(processing) + len(non_processing)} batches",
                    step=DISCOVERY.target.value,
                ),
            )
        except Exception as e:
            logger.error(f"Discovery for {project} failed: {e}", exc_info=True,
                         extra={"project": project, "stage": self.name, "event": "worker_failed"})
            result.status = "failed"
            result.error = sanitize_error_message(e)
            ctx.audit_row(project, "Discovery failed", {"error": result.error})
            advance_project(
                records, project, DISCOVERY.project_in_progress, ProjectStatus.FAILED,
                AuditEntry(step_name=f"Discovery failed: {result.error}", step=ProjectStatus.FAILED.value),
            )
        return result


registry.register(DISCOVERY.name, DiscoveryWorker())
