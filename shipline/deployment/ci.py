"""CIGenerator — generates the GitHub Actions workflow that triggers releases."""

from __future__ import annotations

import logging
from pathlib import Path

from shipline.config import DEFAULT_STATE_DIR, JOURNAL_DB, TARGETS_DIR

logger = logging.getLogger(__name__)

# Known-good records and the journal are carried between runner instances
# through the Actions cache.  Locks are not; the concurrency group
# serializes runs per target instead.
_WORKFLOW_TEMPLATE = """\
name: Shipline release

on:
  push:
    branches: [{branch}]

concurrency:
  group: shipline-{target}
  cancel-in-progress: false

jobs:
  release:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - uses: actions/setup-python@v5
        with:
          python-version: "3.12"
          cache: pip
      - name: Install shipline
        run: pip install .
      - name: Restore release state
        uses: actions/cache/restore@v4
        with:
          path: |
            {state_dir}/{targets_dir}
            {state_dir}/{journal}
          key: shipline-state-{target}-${{{{ github.run_id }}}}-${{{{ github.run_attempt }}}}
          restore-keys: shipline-state-{target}-
      - name: Configure SSH key
        run: |
          mkdir -p ~/.ssh
          echo "${{{{ secrets.SHIPLINE_SSH_PRIVATE_KEY }}}}" > ~/.ssh/shipline_key
          chmod 600 ~/.ssh/shipline_key
          echo "${{{{ secrets.SHIPLINE_KNOWN_HOSTS }}}}" > ~/.ssh/known_hosts
      - name: Release
        env:
          SHIPLINE_ENV: production
          SHIPLINE_REGISTRY_HOST: ${{{{ vars.SHIPLINE_REGISTRY_HOST }}}}
          SHIPLINE_REPOSITORY: ${{{{ vars.SHIPLINE_REPOSITORY }}}}
          SHIPLINE_REGISTRY_USERNAME: ${{{{ secrets.SHIPLINE_REGISTRY_USERNAME }}}}
          SHIPLINE_REGISTRY_PASSWORD: ${{{{ secrets.SHIPLINE_REGISTRY_PASSWORD }}}}
          SHIPLINE_SSH_KEY: ~/.ssh/shipline_key
          SHIPLINE_SSH_KNOWN_HOSTS: ~/.ssh/known_hosts
          SHIPLINE_SLACK_WEBHOOK: ${{{{ secrets.SHIPLINE_SLACK_WEBHOOK }}}}
        run: python -m shipline github-push --target {target} --event-path "$GITHUB_EVENT_PATH"
      - name: Save release state
        if: always()
        uses: actions/cache/save@v4
        with:
          path: |
            {state_dir}/{targets_dir}
            {state_dir}/{journal}
          key: shipline-state-{target}-${{{{ github.run_id }}}}-${{{{ github.run_attempt }}}}
"""


class CIGenerator:
    """Generate CI configuration files."""

    def generate_github_actions(
        self,
        project_path: str | Path,
        target_id: str,
        branch: str = "main",
    ) -> Path:
        """Write .github/workflows/shipline.yml.

        The workflow's concurrency group mirrors the per-target lock so the
        runner does not even start a second job for the same target.

        Returns the path to the generated file.
        """
        root = Path(project_path)
        workflow_dir = root / ".github" / "workflows"
        workflow_dir.mkdir(parents=True, exist_ok=True)

        path = workflow_dir / "shipline.yml"
        path.write_text(
            _WORKFLOW_TEMPLATE.format(
                branch=branch,
                target=target_id,
                state_dir=DEFAULT_STATE_DIR.as_posix(),
                targets_dir=TARGETS_DIR,
                journal=JOURNAL_DB,
            ),
            encoding="utf-8",
        )
        logger.info("GitHub Actions workflow generated: %s", path)
        return path
