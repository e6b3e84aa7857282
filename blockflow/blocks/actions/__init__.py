"""Action blocks - side effects against app data and external services."""

from blockflow.blocks.actions.ai import AiSummarizeBlock
from blockflow.blocks.actions.auth import AuthVerifyBlock
from blockflow.blocks.actions.database import DbCreateBlock, DbFindBlock, DbUpdateBlock, DbUpsertBlock
from blockflow.blocks.actions.email import EmailSendBlock
from blockflow.blocks.actions.files import FileDownloadBlock, FileUploadBlock
from blockflow.blocks.actions.http import HttpRequestBlock
from blockflow.blocks.actions.ui import NotifyToastBlock, PageRedirectBlock

__all__ = [
    "AiSummarizeBlock",
    "AuthVerifyBlock",
    "DbCreateBlock",
    "DbFindBlock",
    "DbUpdateBlock",
    "DbUpsertBlock",
    "EmailSendBlock",
    "FileDownloadBlock",
    "FileUploadBlock",
    "HttpRequestBlock",
    "NotifyToastBlock",
    "PageRedirectBlock",
]
