"""Pydantic contracts for the visual verification pass.

The browser engine that produces these results is an injected collaborator;
only its inputs and outputs are modelled here.
"""

from __future__ import annotations

from typing import Awaitable, Callable, List, Literal, Optional, Protocol

import pydantic as pd
from pydantic.alias_generators import to_camel

from loopforge.review.contracts import now_ms

E2ETestStatus = Literal["PASS", "PARTIAL", "FAIL", "ERROR", "RUNNING", "PENDING"]
InteractionAction = Literal["navigate", "click", "fill", "scroll", "hover", "select", "wait"]
FindingType = Literal["layout", "content", "style", "accessibility", "functionality"]
FindingPriority = Literal["HIGH", "MEDIUM", "LOW"]


class _CamelModel(pd.BaseModel):
    model_config = pd.ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class ViewportConfig(_CamelModel):
    name: str
    width: int
    height: int
    device_name: Optional[str] = None


class ScreenshotViewport(_CamelModel):
    width: int
    height: int
    device_name: Optional[str] = None


class ScreenshotCapture(_CamelModel):
    id: str
    timestamp: int = pd.Field(default_factory=now_ms)
    path: str
    base64: Optional[str] = None
    description: str = ""
    viewport: ScreenshotViewport


class InteractionResult(_CamelModel):
    action: InteractionAction
    target: str
    status: Literal["success", "error", "timeout"]
    duration: int = 0
    screenshot: Optional[str] = None
    error: Optional[str] = None
    value: Optional[str] = None


class VisualFinding(_CamelModel):
    id: str
    type: FindingType
    description: str
    screenshot_id: str = ""
    priority: FindingPriority = "MEDIUM"
    suggested_fix: Optional[str] = None
    location: Optional[str] = None


class TestStep(_CamelModel):
    __test__ = False

    action: InteractionAction
    target: Optional[str] = None
    value: Optional[str] = None
    description: Optional[str] = None
    wait_for: Optional[str] = None
    take_screenshot: bool = False


class TestScenario(_CamelModel):
    __test__ = False

    name: str
    description: Optional[str] = None
    steps: List[TestStep] = pd.Field(default_factory=list)


DEFAULT_VIEWPORTS = (
    ViewportConfig(name="Desktop", width=1920, height=1080),
    ViewportConfig(name="Tablet", width=768, height=1024),
    ViewportConfig(name="Mobile", width=375, height=812),
)


class E2ETestConfig(_CamelModel):
    """Inputs for one visual verification run."""

    project_path: str
    session_id: str
    headless: bool = True
    viewports: List[ViewportConfig] = pd.Field(default_factory=lambda: list(DEFAULT_VIEWPORTS))
    test_scenarios: List[TestScenario] = pd.Field(default_factory=list)
    screenshot_on_every_action: bool = False
    timeout: int = 30000
    dev_server_command: str = "npm run dev"
    dev_server_port: int = 3000
    dev_server_ready_timeout: int = 60000
    base_url: str = "http://localhost:3000"
    agent_cli_path: Optional[str] = None
    model: Optional[str] = None
    ai_driven_testing: bool = True
    ai_max_iterations: int = 15


class E2ETestResult(_CamelModel):
    """Outcome of one visual verification run."""

    test_status: E2ETestStatus
    visual_score: float = pd.Field(default=0, ge=0, le=100)
    screenshots: List[ScreenshotCapture] = pd.Field(default_factory=list)
    interactions: List[InteractionResult] = pd.Field(default_factory=list)
    findings: List[VisualFinding] = pd.Field(default_factory=list)
    dev_server_url: str = ""
    browser_used: str = "chromium"
    test_duration_ms: int = 0
    timestamp: int = pd.Field(default_factory=now_ms)
    summary: str = ""

    @property
    def interaction_errors(self) -> List[InteractionResult]:
        return [i for i in self.interactions if i.status == "error"]


class E2EStatus(_CamelModel):
    """Progress report from a running E2E pass."""

    phase: str
    viewport: Optional[str] = None
    message: Optional[str] = None


StatusCallback = Callable[[E2EStatus], None]
ScreenshotCallback = Callable[[ScreenshotCapture], None]


class E2ERunner(Protocol):
    """Browser automation engine that runs scenarios and scores screenshots."""

    def run_tests(
        self,
        config: E2ETestConfig,
        on_status: StatusCallback,
        on_screenshot: ScreenshotCallback,
    ) -> Awaitable[E2ETestResult]:
        ...


def create_error_e2e_result(error: str, base_url: str = "") -> E2ETestResult:
    return E2ETestResult(
        test_status="ERROR",
        dev_server_url=base_url,
        summary=f"E2E test ERROR: {error}",
    )
