from flowstream.utils.sse import format_sse, format_sse_comment, format_sse_data

__all__ = ["format_sse", "format_sse_comment", "format_sse_data"]
