"""
Result parser for MedVerify.

Turns a captured registry results page into raw candidate records. Every
assumption about the registry's page structure (row labels, column headers,
no-result phrases) lives here and is driven by the ``parser`` configuration
section.
"""

import logging
import re
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from ..errors import ParseError
from ..models import RawCandidate, RawPageContent
from ..normalize.name_normalizer import fold_text

logger = logging.getLogger(__name__)

_LABEL_TRAILER_PATTERN = re.compile(r"[\s:.]+$")

# Column order of a profession row when the table carries no header row
POSITIONAL_COLUMNS = ["profession", "license", "date", "tome", "folio", "postgraduate"]


class _Record:
    def __init__(self):
        self.document = ""
        self.name = ""
        self.rows: List[Dict[str, str]] = []
        self.specialties: List[str] = []

    @property
    def is_empty(self) -> bool:
        return not (self.document or self.name or self.rows or self.specialties)


class ResultParser:
    """
    Parses registry result tables into RawCandidate records.

    Tolerates missing fields: an absent specialty is normal, and a record
    listed without a profession row yields a candidate with an empty
    profession.
    """

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize result parser with configuration.

        Args:
            config: ``parser`` configuration section
        """
        config = config or {}
        self.max_candidates = int(config.get("max_candidates", 10))

        def labels(key, default):
            return [fold_text(v) for v in config.get(key, default)]

        self.document_labels = labels("document_labels", ["NUMERO DE CEDULA", "CEDULA"])
        self.name_labels = labels("name_labels", ["NOMBRE Y APELLIDO", "NOMBRE"])
        self.column_headers = {
            "profession": labels("profession_headers", ["PROFESION"]),
            "license": labels("license_headers", ["MATRICULA"]),
            "date": labels("date_headers", ["FECHA"]),
            "tome": labels("tome_headers", ["TOMO"]),
            "folio": labels("folio_headers", ["FOLIO"]),
            "status": labels("status_headers", ["ESTATUS"]),
        }
        self.postgraduate_markers = labels("postgraduate_markers", ["POSTGRADO"])
        self.specialty_markers = labels("specialty_markers", ["ESPECIALISTA EN"])
        self.no_results_markers = labels("no_results_markers", ["NO SE ENCONTRARON"])

    def parse(self, content: RawPageContent) -> List[RawCandidate]:
        """
        Parse a captured results page.

        Args:
            content: Page captured by the navigator

        Returns:
            Zero or more candidates; empty means the registry reported no match

        Raises:
            ParseError: The page structure was not recognized
        """
        soup = BeautifulSoup(content.html or "", "html.parser")
        page_text = fold_text(soup.get_text(" "))
        reports_no_results = any(marker in page_text for marker in self.no_results_markers)

        records = self._collect_records(soup)
        candidates = self._build_candidates(records)

        if not candidates:
            if reports_no_results:
                logger.info(f"Registry reported no records for {content.document_type.value}")
                return []
            raise ParseError(
                f"Unrecognized registry page structure ({len(soup.find_all('tr'))} table rows)",
                detail={"url": content.url, "final_state": content.final_state.value},
            )

        if len(candidates) > self.max_candidates:
            logger.warning(f"Registry returned {len(candidates)} candidates, keeping {self.max_candidates}")
            candidates = candidates[:self.max_candidates]

        logger.info(f"Parsed {len(candidates)} candidate(s) from registry page")
        return candidates

    def _collect_records(self, soup: BeautifulSoup) -> List[_Record]:
        records = [_Record()]
        column_map: Optional[Dict[str, int]] = None

        for row in soup.find_all("tr"):
            cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"], recursive=False)]
            if not any(cells):
                continue
            folded = [fold_text(cell) for cell in cells]
            current = records[-1]

            label = _LABEL_TRAILER_PATTERN.sub("", folded[0])
            if len(cells) == 2 and self._matches(label, self.document_labels):
                if current.document or current.rows:
                    current = _Record()
                    records.append(current)
                current.document = cells[1]
                continue
            if len(cells) == 2 and self._matches(label, self.name_labels):
                if current.name:
                    current = _Record()
                    records.append(current)
                current.name = " ".join(cells[1].split())
                continue

            specialty_cells = [cells[i] for i, text in enumerate(folded)
                               if any(marker in text for marker in self.specialty_markers)]
            if specialty_cells:
                current.specialties.extend(specialty_cells)
                continue

            header_map = self._header_map(folded)
            if header_map is not None:
                column_map = header_map
                continue

            profession_row = self._profession_row(cells, folded, column_map)
            if profession_row is not None:
                current.rows.append(profession_row)

        return [record for record in records if not record.is_empty]

    @staticmethod
    def _matches(text: str, labels: List[str]) -> bool:
        return any(text == label or text.startswith(label + " ") for label in labels)

    def _header_map(self, folded: List[str]) -> Optional[Dict[str, int]]:
        mapping: Dict[str, int] = {}
        for index, text in enumerate(folded):
            text = _LABEL_TRAILER_PATTERN.sub("", text)
            for field, headers in self.column_headers.items():
                if field not in mapping and any(text.startswith(h) for h in headers):
                    mapping[field] = index
                    break

        if "profession" in mapping and "license" in mapping:
            return mapping
        return None

    def _profession_row(self, cells: List[str], folded: List[str],
                        column_map: Optional[Dict[str, int]]) -> Optional[Dict[str, str]]:
        has_postgraduate = any(any(m in text for m in self.postgraduate_markers) for text in folded)

        if column_map is not None and len(cells) > max(column_map.values()):
            row = {field: cells[index] for field, index in column_map.items()}
        elif len(cells) in (5, 6):
            row = dict(zip(POSITIONAL_COLUMNS, cells))
            row.pop("postgraduate", None)
        else:
            return None

        if not row.get("profession") and not row.get("license"):
            return None

        row["has_postgraduate"] = has_postgraduate
        return row

    def _build_candidates(self, records: List[_Record]) -> List[RawCandidate]:
        candidates: List[RawCandidate] = []

        for record in records:
            if not record.name and not record.rows:
                continue

            specialty_text = "; ".join(dict.fromkeys(record.specialties))
            if not record.rows:
                candidates.append(RawCandidate(
                    name=record.name,
                    document_text=record.document,
                    specialty_text=specialty_text,
                ))
                continue

            # Specialties belong to rows flagged as postgraduate, or to the only row
            flagged = [row for row in record.rows if row["has_postgraduate"]]
            specialty_rows = flagged if flagged else (record.rows if len(record.rows) == 1 else [])
            if record.specialties and not specialty_rows:
                logger.debug("Specialty text present but no profession row to attach it to")

            for row in record.rows:
                candidates.append(RawCandidate(
                    name=record.name,
                    profession_text=row.get("profession", ""),
                    specialty_text=specialty_text if any(row is r for r in specialty_rows) else "",
                    license_number=row.get("license", ""),
                    registration_date=row.get("date", ""),
                    legal_status_text=row.get("status", ""),
                    document_text=record.document,
                    tome=row.get("tome", ""),
                    folio=row.get("folio", ""),
                    has_postgraduate=row["has_postgraduate"],
                ))

        return candidates
