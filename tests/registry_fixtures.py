"""
Shared test doubles for MedVerify tests.

Registry pages reproduce the layout of the professional registry results:
two-cell label rows for the document and name, a profession table with a
"Postgrados" control, and the specialty rows revealed by that control.
"""

import threading
import time
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from medverify.models import DocumentType, NavigatorState, RawPageContent
from medverify.scraping.navigator import (
    EXPAND_POSTGRADUATE_JS,
    RESULT_KIND_JS,
    RESULTS_READY_JS,
    SEARCH_FORM_READY_JS,
    SPECIALTY_READY_JS,
    SUBMIT_SEARCH_JS,
)
from medverify.session.browser_session import BrowserSession
from medverify.settings import get_default_verification_config

LANDING_HTML = """
<html><body>
<h1>Consulta de Profesionales de la Salud</h1>
<form id="consulta"><input type="text" name="cedula"><input type="button" value="Consultar"></form>
</body></html>
"""

NO_RESULTS_HTML = """
<html><body>
<div id="resultado"><p>NO SE ENCONTRARON REGISTROS PARA LA CÉDULA INDICADA</p></div>
</body></html>
"""

MAINTENANCE_HTML = """
<html><body><p>Sistema en mantenimiento. Intente más tarde.</p></body></html>
"""

CHALLENGE_HTML = """
<html><body><div class="g-recaptcha" data-sitekey="abc"></div></body></html>
"""


def profession_row(profession, license_number="MPPS-67301", date="2005-01-13", tome="101", folio="87",
                   postgraduate=True, status=None):
    cells = [profession, license_number, date, tome, folio]
    if status is not None:
        cells.append(status)
    cells.append("<button>Postgrados</button>" if postgraduate else "")
    return "<tr>" + "".join(f"<td>{cell}</td>" for cell in cells) + "</tr>"


def registry_page(name="ANGHINIE SANCHEZ RODRIGUEZ", document="V-13266929", rows=None,
                  specialties=None, with_status=False):
    """Build a registry results page."""
    if rows is None:
        rows = [profession_row("MÉDICO(A) CIRUJANO(A)")]
    headers = ["PROFESIÓN", "MATRÍCULA", "FECHA DE REGISTRO", "TOMO", "FOLIO"]
    if with_status:
        headers.append("ESTATUS")
    headers.append("")

    specialty_table = ""
    if specialties:
        specialty_rows = "".join(f"<tr><td>{s}</td><td>MPPS-67301</td><td>2012-07-20</td></tr>"
                                 for s in specialties)
        specialty_table = f"<table id='postgrados'>{specialty_rows}</table>"

    return f"""
<html><body>
<table id="datos">
  <tr><td>NÚMERO DE CÉDULA:</td><td>{document}</td></tr>
  <tr><td>NOMBRE Y APELLIDO:</td><td>{name}</td></tr>
</table>
<table id="profesiones">
  <tr>{''.join(f'<th>{h}</th>' for h in headers)}</tr>
  {''.join(rows)}
</table>
{specialty_table}
</body></html>
"""


def page_content(html, state=NavigatorState.RESULTS_READY, document_number="V-13266929"):
    return RawPageContent(
        html=html,
        url="https://sistemas.sacs.gob.ve/consultas/prfsnal_salud",
        document_type=DocumentType.NATIONAL_ID,
        document_number=document_number,
        final_state=state,
        state_history=["Idle", "NavigatingToSearchForm", "SubmittingQuery", "WaitingForResults", state.value],
    )


def make_config(**overrides):
    """Default configuration with fast timings and no audit database."""
    config = get_default_verification_config()
    config["retry"]["jitter"] = False
    config["audit"]["enabled"] = False
    for section, values in overrides.items():
        config[section] = dict(config.get(section, {}), **values)
    return config


class FakePage:
    """
    Scripted stand-in for a Playwright page.

    ``errors`` maps a step name (goto, search_form, submit, results,
    specialty) to an exception raised at that step; ``delays`` maps a step
    to seconds to block first.
    """

    def __init__(self, results_html=None, landing_html=LANDING_HTML, result_kind="results",
                 has_postgraduate=True, errors=None, delays=None):
        self.results_html = results_html if results_html is not None else registry_page(
            specialties=["ESPECIALISTA EN MEDICINA INTERNA"])
        self.landing_html = landing_html
        self.result_kind = result_kind
        self.has_postgraduate = has_postgraduate
        self.errors = errors or {}
        self.delays = delays or {}
        self.url = "about:blank"
        self.calls = []
        self.submitted = None
        self._html = ""

    def _step(self, step):
        self.calls.append(step)
        if step in self.delays:
            time.sleep(self.delays[step])
        if step in self.errors:
            raise self.errors[step]

    def set_default_timeout(self, timeout):
        pass

    def goto(self, url, wait_until=None, timeout=None):
        self._step("goto")
        self.url = url
        self._html = self.landing_html

    def content(self):
        return self._html

    def wait_for_function(self, expression, arg=None, timeout=None):
        steps = {
            SEARCH_FORM_READY_JS: "search_form",
            RESULTS_READY_JS: "results",
            SPECIALTY_READY_JS: "specialty",
        }
        self._step(steps[expression])
        return True

    def evaluate(self, expression, arg=None):
        if expression == SUBMIT_SEARCH_JS:
            self._step("submit")
            self.submitted = arg
            self._html = self.results_html
            return True
        if expression == EXPAND_POSTGRADUATE_JS:
            self._step("expand")
            return self.has_postgraduate
        if expression == RESULT_KIND_JS:
            return self.result_kind
        raise AssertionError(f"Unexpected script: {expression[:40]}")


class FakeBrowserSession(BrowserSession):
    """BrowserSession driving a FakePage instead of a real browser."""

    def __init__(self, session_id, config=None, page=None, launch_error=None):
        super().__init__(session_id, config)
        self._fake_page = page or FakePage()
        self._launch_error = launch_error
        self.teardowns = 0

    def _launch(self):
        if self._launch_error is not None:
            raise self._launch_error
        self.page = self._fake_page

    def _teardown(self):
        self.teardowns += 1


class ScriptedNavigator:
    """
    Navigator double returning scripted outcomes in order.

    The last outcome repeats. Exceptions in the script are raised.
    """

    def __init__(self, outcomes, delay=0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def search(self, session, document_type, document_number, deadline=None):
        with self._lock:
            self.calls += 1
            outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if self.delay:
            time.sleep(self.delay)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
