"""Run reporting: one JSON and one markdown file per create-cluster run."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class PhaseResult:
    """Outcome of one orchestrator state."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


@dataclass
class RunReport:
    """Collects per-state results and writes them under report_dir."""
    cluster: str
    report_dir: Path
    scenario: str = ''
    phases: list[PhaseResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    error_category: Optional[str] = None

    _descriptions: dict = field(default_factory=dict, repr=False)
    _phase_start: Optional[datetime] = field(default=None, repr=False)

    def start(self):
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def start_phase(self, name: str, description: str):
        self._descriptions[name] = description
        self._phase_start = datetime.now()

    def pass_phase(self, name: str, message: str = '', duration: float = 0.0):
        self._record_phase(name, 'passed', message, duration)

    def fail_phase(self, name: str, message: str = '', duration: float = 0.0):
        self._record_phase(name, 'failed', message, duration)

    def skip_phase(self, name: str, description: str):
        self.phases.append(PhaseResult(name=name, description=description, status='skipped'))

    def _record_phase(self, name: str, status: str, message: str, duration: float):
        now = datetime.now()
        if duration == 0.0 and self._phase_start:
            duration = (now - self._phase_start).total_seconds()
        self.phases.append(PhaseResult(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            started_at=self._phase_start,
            finished_at=now,
        ))
        self._phase_start = None

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool, error_category: Optional[str] = None) -> list[Path]:
        """Finalize report and write files. Returns the written paths."""
        self.finished_at = datetime.now()
        self.success = success
        self.error_category = error_category
        return [self._write_json(), self._write_markdown()]

    def _write_json(self) -> Path:
        data = {
            'scenario': self.scenario,
            'cluster': self.cluster,
            'success': self.success,
            'error_category': self.error_category,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'phases': [
                {
                    'name': p.name,
                    'description': p.description,
                    'status': p.status,
                    'message': p.message,
                    'duration': p.duration,
                }
                for p in self.phases
            ],
        }
        filename = self._report_filename('json')
        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        status = 'PASSED' if self.success else 'FAILED'
        lines = [
            f"# {self.scenario}: {self.cluster}",
            "",
            f"**Cluster**: {self.cluster}",
            f"**Status**: {status}",
        ]
        if self.error_category:
            lines.append(f"**Error category**: {self.error_category}")
        lines.extend([
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## States",
            "",
            "| State | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ])
        for p in self.phases:
            status_emoji = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(p.status, '❓')
            message = p.message.replace('|', '\\|').replace('\n', ' ')
            lines.append(f"| {p.name} | {status_emoji} {p.status} | {p.duration:.1f}s | {message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """<timestamp>.<cluster>.<passed|failed>.<ext>"""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        return self.report_dir / f"{timestamp}.{self.cluster}.{status}.{ext}"

    def to_dict(self, run=None) -> dict:
        """Report as a dictionary for --json-output.

        Args:
            run: Optional WorkflowRun whose persisted summary is included
        """
        result = {
            'scenario': self.scenario,
            'cluster': self.cluster,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'phases': [
                {
                    'name': p.name,
                    'status': p.status,
                    'duration': round(p.duration, 1),
                }
                for p in self.phases
            ],
        }

        if not self.success:
            for p in self.phases:
                if p.status == 'failed' and p.message:
                    result['error'] = p.message
                    break
            if self.error_category:
                result['error_category'] = self.error_category

        if run is not None:
            summary = run.to_dict()
            summary.pop('history', None)
            result['run'] = summary

        return result
