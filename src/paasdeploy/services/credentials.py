"""Credential loading and merging."""

from pathlib import Path
from typing import Sequence

from dotenv import dotenv_values

from paasdeploy.constants import DEFAULT_CRITICAL_CREDENTIALS, PLACEHOLDER_VALUES
from paasdeploy.models import CredentialSet


class CredentialLoader:
    """Merges credential sources in order; later sources win on key collisions.

    Nothing here is fatal: unreadable sources and missing critical keys are
    reported as warnings so an operator can still inspect the rendered result.
    """

    def __init__(self, logger, critical_keys: Sequence[str] = DEFAULT_CRITICAL_CREDENTIALS):
        self.logger = logger
        self.critical_keys = tuple(critical_keys)

    def load(self, sources: Sequence[str]) -> CredentialSet:
        credentials = CredentialSet()

        for source in sources:
            path = Path(source)
            try:
                if not path.is_file():
                    raise FileNotFoundError(f"no such file: {source}")
                # No `${VAR}` expansion; values are literal.
                parsed = dotenv_values(path, interpolate=False, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                message = f"Credential source '{source}' is unavailable, skipping it: {exc}"
                self.logger.warning(message)
                credentials.warnings.append(message)
                continue

            pairs = {}
            for key, value in parsed.items():
                if value is None:
                    message = f"Ignoring '{key}' in credential source '{source}': no value assigned"
                    self.logger.warning(message)
                    credentials.warnings.append(message)
                    continue
                pairs[key] = value

            overridden = sorted(key for key in pairs if key in credentials.values)
            if overridden:
                self.logger.debug("Credential source '%s' overrides: %s", source, ", ".join(overridden))

            credentials.values.update(pairs)
            credentials.sources_loaded.append(str(source))
            self.logger.info("Loaded %s credentials from %s", len(pairs), source)

        self._check_critical(credentials)
        return credentials

    def _check_critical(self, credentials: CredentialSet):
        for key in self.critical_keys:
            value = credentials.values.get(key)
            if not value:
                credentials.missing_critical.append(key)
                message = (
                    f"Critical credential '{key}' is missing; "
                    "the deployment will run with an insecure placeholder"
                )
                self.logger.warning(message)
                credentials.warnings.append(message)
            elif value.strip().lower() in PLACEHOLDER_VALUES:
                credentials.placeholder_keys.append(key)
                message = f"Critical credential '{key}' uses a well-known placeholder value"
                self.logger.warning(message)
                credentials.warnings.append(message)
