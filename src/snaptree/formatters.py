from __future__ import annotations

import json
import textwrap
from pathlib import Path
from typing import TYPE_CHECKING, Any

from snaptree.formatting import (
    FormatOptions,
    OutputFormat,
    add_line_numbers,
    begin_marker,
    build_tree_lines,
    choose_fence,
    directory_structure,
    end_marker,
    escape_cdata,
    exclusion_comment,
    fence_language,
    file_digest,
    format_bytes,
    iso_utc,
    now_iso,
    parse_format,
    total_size,
    tool_version,
    xml_attr,
    xml_text,
    yaml_scalar,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from snaptree.models import FileDescriptor, GitMetadata

    Prepare = Callable[[FileDescriptor], FileDescriptor | None]
    Writer = Callable[[Sequence[FileDescriptor], FormatOptions, Prepare | None], Iterator[str]]

SARIF_SCHEMA = "https://json.schemastore.org/sarif-2.1.0.json"
SARIF_RULE_ID = "file-discovered"


def _each(files: Sequence[FileDescriptor], prepare: Prepare | None) -> Iterator[FileDescriptor]:
    """Yield renderable files; prepared content is released once the consumer moves on."""
    for file in files:
        ready = prepare(file) if prepare is not None else file
        if ready is None:
            continue
        yield ready
        if prepare is not None:
            ready.release_content()


def _content(file: FileDescriptor, options: FormatOptions) -> str:
    content = file.content or ""
    if options.add_line_numbers and content and not file.is_binary:
        return add_line_numbers(content)
    return content


def _git_payload(meta: GitMetadata | None) -> dict[str, Any] | None:
    if meta is None:
        return None
    return {
        "branch": meta.branch,
        "last_commit": meta.last_commit.model_dump() if meta.last_commit else None,
        "filter_type": meta.filter_type,
        "has_uncommitted_changes": meta.has_uncommitted_changes,
    }


def _dumps(obj: Any, options: FormatOptions) -> str:  # noqa: ANN401
    if options.pretty_print:
        return json.dumps(obj, ensure_ascii=False, indent=2)
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _compact(obj: Any) -> str:  # noqa: ANN401
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _file_record(file: FileDescriptor, options: FormatOptions) -> dict[str, Any]:
    record: dict[str, Any] = {
        "path": file.path,
        "size": file.size,
        "modified": iso_utc(file.modified),
        "is_binary": file.is_binary,
        "encoding": file.encoding,
    }
    if file.binary_category:
        record["binary_category"] = file.binary_category
    if file.git_status:
        record["git_status"] = file.git_status
    if file.always_include:
        record["always_include"] = True
    if file.transformed_by:
        record["transformed_by"] = file.transformed_by
    if file.secrets_redacted:
        record["secrets_redacted"] = file.secrets_redacted
    if file.truncated:
        record["truncated"] = True
        if file.original_length is not None:
            record["original_length"] = file.original_length
    if file.excluded:
        record["excluded"] = True
        record["exclude_reason"] = file.exclude_reason
    elif not options.only_tree:
        record["content"] = _content(file, options) if file.content is not None else None
    return record


# XML


def _xml_metadata(files: Sequence[FileDescriptor], options: FormatOptions) -> str:
    lines = [
        "  <ct:metadata>",
        f"    <ct:generated>{xml_text(options.generated)}</ct:generated>",
        f"    <ct:fileCount>{len(files)}</ct:fileCount>",
        f"    <ct:totalSize>{total_size(files)}</ct:totalSize>",
        f"    <ct:profile>{xml_text(options.profile_name)}</ct:profile>",
    ]
    git = options.git_metadata
    if git is not None:
        lines.append("    <ct:git>")
        if git.branch:
            lines.append(f"      <ct:branch>{xml_text(git.branch)}</ct:branch>")
        if git.last_commit:
            message = escape_cdata(git.last_commit.message)
            lines.append(
                f"      <ct:lastCommit hash={xml_attr(git.last_commit.hash)}><![CDATA[{message}]]></ct:lastCommit>",
            )
        if git.filter_type:
            lines.append(f"      <ct:filterType>{xml_text(git.filter_type)}</ct:filterType>")
        lines.append(
            f"      <ct:hasUncommittedChanges>{'true' if git.has_uncommitted_changes else 'false'}</ct:hasUncommittedChanges>",
        )
        lines.append("    </ct:git>")
    structure = directory_structure(files)
    if structure:
        lines.append(f"    <ct:directoryStructure>{xml_text(structure)}</ct:directoryStructure>")
    if options.instructions:
        name = f" name={xml_attr(options.instructions_name)}" if options.instructions_name else ""
        lines.append(f"    <ct:instructions{name}><![CDATA[{escape_cdata(options.instructions)}]]></ct:instructions>")
    lines += ["  </ct:metadata>", "  <ct:files>"]
    return "\n".join(lines) + "\n"


def _xml_file(file: FileDescriptor, options: FormatOptions) -> str:
    attrs = [f"path={xml_attr('@' + file.path)}", f'size="{file.size}"']
    if file.modified is not None:
        attrs.append(f"modified={xml_attr(iso_utc(file.modified))}")
    if file.is_binary:
        attrs.append('binary="true"')
        if file.encoding:
            attrs.append(f"encoding={xml_attr(file.encoding)}")
    if file.binary_category:
        attrs.append(f"binaryCategory={xml_attr(file.binary_category)}")
    if file.git_status:
        attrs.append(f"gitStatus={xml_attr(file.git_status)}")
    if file.truncated:
        attrs.append('truncated="true"')
        if file.original_length is not None:
            attrs.append(f'originalLength="{file.original_length}"')
    body = ""
    if not options.only_tree:
        if file.excluded:
            body = exclusion_comment(file)
        else:
            body = f"<![CDATA[{escape_cdata(_content(file, options))}]]>"
    return f"    <ct:file {' '.join(attrs)}>{body}</ct:file>\n"


def xml_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """XML document; file content is wrapped in CDATA sections."""
    yield '<?xml version="1.0" encoding="UTF-8"?>\n'
    yield f'<ct:directory xmlns:ct="urn:snaptree" path={xml_attr(options.base_path)}>\n'
    yield _xml_metadata(files, options)
    for file in _each(files, prepare):
        yield _xml_file(file, options)
    yield "  </ct:files>\n</ct:directory>\n"


# JSON


def _json_metadata(files: Sequence[FileDescriptor], options: FormatOptions) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "generated": options.generated,
        "file_count": len(files),
        "total_size": total_size(files),
        "profile": options.profile_name,
        "directory_structure": directory_structure(files),
    }
    if options.git_metadata is not None:
        meta["git"] = _git_payload(options.git_metadata)
    if options.instructions:
        meta["instructions"] = {"name": options.instructions_name or "default", "content": options.instructions}
    return meta


def json_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """A single JSON object, emitted piecewise.

    The pieces concatenate to ``json.dumps`` of the whole document with the
    same indentation, so the files array never has to be held in memory.
    """
    head = _dumps({"directory": options.base_path, "metadata": _json_metadata(files, options)}, options)
    first = True
    if options.pretty_print:
        yield head[: -len("\n}")] + ',\n  "files": ['
        for file in _each(files, prepare):
            body = textwrap.indent(_dumps(_file_record(file, options), options), "    ")
            yield ("\n" if first else ",\n") + body
            first = False
        yield "]\n}\n" if first else "\n  ]\n}\n"
    else:
        yield head[:-1] + ',"files":['
        for file in _each(files, prepare):
            yield ("" if first else ",") + _dumps(_file_record(file, options), options)
            first = False
        yield "]}\n"


# NDJSON


def ndjson_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """One JSON object per line: metadata, one record per file, summary."""
    metadata: dict[str, Any] = {
        "type": "metadata",
        "directory": options.base_path,
        "generated": options.generated,
        "file_count": len(files),
        "total_size": total_size(files),
        "profile": options.profile_name,
    }
    if options.git_metadata is not None:
        metadata["git"] = _git_payload(options.git_metadata)
    if options.instructions:
        metadata["instructions"] = {"name": options.instructions_name or "default", "content": options.instructions}
    yield _compact(metadata) + "\n"

    count = size = 0
    for file in _each(files, prepare):
        count += 1
        size += file.size
        yield _compact({"type": "file", **_file_record(file, options)}) + "\n"
    yield _compact({"type": "summary", "file_count": count, "total_size": size, "processed_at": options.generated}) + "\n"


# Markdown


def _markdown_header(files: Sequence[FileDescriptor], options: FormatOptions) -> str:
    name = options.instructions_name
    included = bool(options.instructions)
    char_limit = options.char_limit_applied or any(f.truncated for f in files)
    lines = [
        "---",
        "format: snaptree-md@1",
        f"tool: {options.tool_name}",
        f"generated: {yaml_scalar(options.generated)}",
        f"base_path: {yaml_scalar(options.base_path)}",
        f"profile: {yaml_scalar(options.profile_name)}",
        f"file_count: {len(files)}",
        f"total_size_bytes: {total_size(files)}",
        f"char_limit_applied: {'true' if char_limit else 'false'}",
        f"only_tree: {'true' if options.only_tree else 'false'}",
        f"include_git_status: {'true' if options.include_git_status else 'false'}",
        f"include_line_numbers: {'true' if options.add_line_numbers else 'false'}",
        "instructions:",
        f"  name: {yaml_scalar(name)}",
        f"  included: {'true' if included else 'false'}",
        "---",
        "",
        f"# {options.tool_name} export: {Path(options.base_path).name or options.base_path}",
        "",
        "## Directory Tree",
    ]
    tree = directory_structure(files)
    tree_fence = choose_fence(tree)
    lines += [f"{tree_fence}text", tree, tree_fence, ""]
    if included:
        marker_name = yaml_scalar(name or "default")
        fence = choose_fence(options.instructions or "")
        lines += [
            "## Instructions",
            "",
            f"<!-- snaptree:instructions-begin name={marker_name} -->",
            f"{fence}text",
            options.instructions or "",
            fence,
            "",
            f"<!-- snaptree:instructions-end name={marker_name} -->",
            "",
        ]
    return "\n".join(lines) + "\n"


def _binary_mode(file: FileDescriptor) -> str | None:
    if not file.is_binary:
        return None
    if file.encoding == "base64":
        return "base64"
    if file.excluded:
        return "comment"
    return "placeholder"


def _markdown_file(file: FileDescriptor, options: FormatOptions) -> str:
    rel = f"@{file.path}"
    digest = file_digest(file)
    attrs = {
        "path": rel,
        "size": file.size,
        "modified": iso_utc(file.modified),
        "hash": f"sha256:{digest}" if digest else None,
        "git": file.git_status if options.include_git_status else None,
        "binary": file.is_binary,
        "encoding": file.encoding,
        "binaryMode": _binary_mode(file),
        "truncated": file.truncated,
        "truncatedAt": len(file.content or "") if file.truncated else None,
    }
    parts = [begin_marker(attrs), "", f"### {rel}", ""]
    if file.excluded:
        parts.append(exclusion_comment(file))
    else:
        content = _content(file, options)
        fence = choose_fence(content)
        if file.encoding == "base64":
            parts += [f"{fence}text", "Content-Transfer: base64", content, fence]
        else:
            lang = "text" if file.is_binary else fence_language(file.path)
            parts += [f"{fence}{lang}", content, fence]
    if file.truncated:
        remaining = ""
        if file.original_length is not None:
            remaining = f' remaining="{max(0, file.original_length - len(file.content or ""))}"'
        parts += ["", f'<!-- snaptree:truncated reason="char-limit"{remaining} -->']
    parts += ["", end_marker(rel), "", ""]
    return "\n".join(parts)


def markdown_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """Front matter, directory tree, optional instructions, then one section per file."""
    yield _markdown_header(files, options)
    if options.only_tree:
        return
    yield "## Files\n\n"
    for file in _each(files, prepare):
        yield _markdown_file(file, options)


# Tree


def tree_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """Box-drawing tree; needs the whole list, so it is rendered in one chunk."""
    ready = list(_each(files, prepare))
    entries = [(f.path, f.size if options.show_size else None) for f in ready]
    lines = [options.base_path, "", *build_tree_lines("", entries)[1:], ""]
    lines.append(f"{len(ready)} files, {format_bytes(total_size(ready))}")
    yield "\n".join(lines) + "\n"


# SARIF


def _file_uri(base_path: str) -> str:
    path = Path(base_path)
    if base_path.startswith("file://"):
        return base_path
    if path.is_absolute():
        return path.as_uri()
    return base_path.replace("\\", "/")


def _sarif_result(file: FileDescriptor, options: FormatOptions) -> dict[str, Any]:
    location: dict[str, Any] = {"artifactLocation": {"uri": file.path, "uriBaseId": "%SRCROOT%"}}
    if file.content and not file.is_binary and not options.only_tree:
        location["region"] = {"startLine": 1, "endLine": max(1, len(file.content.split("\n")))}
    properties: dict[str, Any] = {
        "size": file.size,
        "modified": iso_utc(file.modified),
        "isBinary": file.is_binary,
    }
    if file.encoding:
        properties["encoding"] = file.encoding
    if file.binary_category:
        properties["binaryCategory"] = file.binary_category
    if file.git_status:
        properties["gitStatus"] = file.git_status
    if file.truncated:
        properties["truncated"] = True
        if file.original_length is not None:
            properties["originalLength"] = file.original_length
    return {
        "ruleId": SARIF_RULE_ID,
        "level": "note",
        "message": {"text": f"File discovered: {file.path}"},
        "locations": [{"physicalLocation": location}],
        "properties": properties,
    }


def sarif_stream(files: Sequence[FileDescriptor], options: FormatOptions, prepare: Prepare | None = None) -> Iterator[str]:
    """SARIF 2.1.0 log with one ``note`` result per file; rendered in one chunk."""
    results = [_sarif_result(f, options) for f in _each(files, prepare)]
    git = options.git_metadata
    document = {
        "$schema": SARIF_SCHEMA,
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": options.tool_name,
                        "version": tool_version(),
                        "rules": [
                            {
                                "id": SARIF_RULE_ID,
                                "name": "FileDiscovered",
                                "shortDescription": {"text": "A file was discovered."},
                                "fullDescription": {
                                    "text": "This file was enumerated in the selected scope by the configured profile and filters.",
                                },
                                "defaultConfiguration": {"level": "note"},
                                "properties": {"category": "file-discovery", "tags": ["discovery", "enumeration"]},
                            },
                        ],
                    },
                },
                "results": results,
                "invocations": [
                    {
                        "executionSuccessful": True,
                        "endTimeUtc": options.generated,
                        "workingDirectory": {"uri": _file_uri(options.base_path)},
                    },
                ],
                "properties": {
                    "profile": options.profile_name,
                    "fileCount": len(results),
                    "totalSize": sum(r["properties"]["size"] for r in results),
                    "git": {
                        "branch": git.branch,
                        "lastCommit": git.last_commit.model_dump() if git.last_commit else None,
                        "hasUncommittedChanges": git.has_uncommitted_changes,
                    }
                    if git is not None
                    else None,
                },
            },
        ],
    }
    yield _dumps(document, options) + "\n"


WRITERS: dict[OutputFormat, Writer] = {
    OutputFormat.XML: xml_stream,
    OutputFormat.JSON: json_stream,
    OutputFormat.MARKDOWN: markdown_stream,
    OutputFormat.TREE: tree_stream,
    OutputFormat.NDJSON: ndjson_stream,
    OutputFormat.SARIF: sarif_stream,
}


def format_stream(
    files: Sequence[FileDescriptor],
    options: FormatOptions | None = None,
    prepare: Prepare | None = None,
    **overrides: Any,  # noqa: ANN401
) -> Iterator[str]:
    """Serialize ``files`` as a lazy sequence of chunks.

    The format is validated before the first chunk is requested. When
    ``prepare`` is given it is called on each file right before the file is
    rendered (it may return None to drop the file) and the file's content is
    released once its chunk has been consumed.

    Args:
        files (Sequence[FileDescriptor]): the files to render.
        options (FormatOptions | None): rendering options; defaults when None.
        prepare (Prepare | None): per-file hook applied lazily.
        **overrides: FormatOptions fields overriding ``options``.

    Returns:
        Iterator[str]: chunks whose concatenation is the full document.

    Raises:
        ValidationError: If the format name is unknown.
    """
    opts = (options or FormatOptions()).model_copy(update=overrides)
    writer = WRITERS[parse_format(opts.format)]
    if opts.generated is None:
        opts = opts.model_copy(update={"generated": now_iso()})
    return writer(files, opts, prepare)


def format_files(files: Sequence[FileDescriptor], options: FormatOptions | None = None, **overrides: Any) -> str:  # noqa: ANN401
    """Serialize ``files`` into one string; equal to joining :func:`format_stream`."""
    return "".join(format_stream(files, options, **overrides))
