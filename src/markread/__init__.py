"""MarkRead remote repository support.

Opens branches of GitHub and Azure DevOps repositories without a local clone
by talking to the providers' REST APIs.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
