"""Command-line client for the upload API"""
from .uploader import ResumableUploader, main

__all__ = ["ResumableUploader", "main"]
