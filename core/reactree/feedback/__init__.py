"""Feedback messages and the router that bounds and resolves them."""

from reactree.feedback.message import FeedbackMessage, FeedbackRequest, FeedbackType

__all__ = ["FeedbackMessage", "FeedbackRequest", "FeedbackType"]
