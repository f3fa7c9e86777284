"""Claude-backed summarization of messages for digests."""

from mailflow.ai.summarizer import ClaudeDigestSummarizer, DigestSummary, Summarizer

__all__ = ["ClaudeDigestSummarizer", "DigestSummary", "Summarizer"]
