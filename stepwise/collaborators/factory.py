"""Collaborator factory.

Resolves the configured collaborator kind to an implementation.
"""

import logging
from pathlib import Path

from stepwise.config import Settings
from stepwise.errors import PreconditionError

logger = logging.getLogger(__name__)


def get_collaborator(settings: Settings, workspace: Path):
    """Build the collaborator named by ``collaborator.kind``.

    Raises:
        PreconditionError: If the kind is unknown or not configured
    """
    kind = settings.collaborator.kind
    timeout = settings.collaborator_timeout_seconds

    if kind == "command":
        from stepwise.collaborators.command import CommandCollaborator

        return CommandCollaborator(settings.collaborator.commands, workspace, timeout=timeout)
    elif kind == "anthropic":
        from stepwise.collaborators.backends import AnthropicBackend
        from stepwise.collaborators.llm import AnthropicCollaborator

        logger.info(f"Using Anthropic collaborator ({settings.collaborator.model})")
        return AnthropicCollaborator(
            workspace,
            backend=AnthropicBackend(model_id=settings.collaborator.model),
            max_tokens=settings.collaborator.max_tokens,
            timeout=timeout,
        )
    else:
        raise PreconditionError(
            f"Unknown collaborator kind: '{kind}'. Expected 'command' or 'anthropic'."
        )
