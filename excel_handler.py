import os
import logging
from datetime import datetime
from typing import Optional, Dict, List

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Font, Alignment, Border, Side, PatternFill
from openpyxl.utils import get_column_letter

from team_logic import BATCHES, EXPORT_COLUMNS


class ExcelHandler:
    # Widths match the Team No / Batch / roll / name column order
    COLUMN_WIDTHS = [10, 8, 15, 25, 15, 25, 15, 25]

    def __init__(self, export_folder: str = 'exports'):
        self.logger = logging.getLogger(__name__)
        self.export_folder = export_folder

    def read_student_data(self, filepath: str) -> Optional[pd.DataFrame]:
        """
        Read a student roster from an Excel file.
        Expected columns: Roll No, Name, Batch
        """
        try:
            df = pd.read_excel(filepath, dtype=str)

            # Normalize column names (handle case variations and spaces)
            df.columns = df.columns.str.strip().str.lower().str.replace(' ', '_')

            column_mappings = {
                'roll_no': ['roll_no', 'rollno', 'roll_number', 'roll', 'register_number', 'student_id'],
                'name': ['name', 'student_name', 'full_name'],
                'batch': ['batch', 'section', 'sec', 'group'],
            }

            mapped_columns = {}
            for expected_col, possible_names in column_mappings.items():
                for possible_name in possible_names:
                    if possible_name in df.columns:
                        mapped_columns[expected_col] = possible_name
                        break

            missing_columns = [col for col in column_mappings if col not in mapped_columns]
            if missing_columns:
                self.logger.error(f"Missing columns: {missing_columns}")
                return None

            result_df = pd.DataFrame()
            for standard_name, original_name in mapped_columns.items():
                result_df[standard_name] = df[original_name]

            return self._clean_student_data(result_df)

        except Exception as e:
            self.logger.error(f"Error reading Excel file: {str(e)}")
            return None

    def _clean_student_data(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Drop incomplete rows, unknown batches and repeated roll numbers.
        """
        df = df.dropna(subset=['roll_no', 'name', 'batch']).copy()

        for col in ['roll_no', 'name', 'batch']:
            df[col] = df[col].astype(str).str.strip()

        df['batch'] = df['batch'].str.upper()
        rejected = df[~df['batch'].isin(BATCHES)]
        if len(rejected):
            self.logger.warning(f"Skipping {len(rejected)} rows with unknown batch")
        df = df[df['batch'].isin(BATCHES)]

        df = df.drop_duplicates(subset=['roll_no'], keep='first')
        return df.reset_index(drop=True)

    def export_teams(self, batch: str, rows: List[Dict]) -> Optional[str]:
        """
        Export the team roster of a batch to an Excel file.
        Returns the file path, or None if the workbook could not be written.
        """
        try:
            wb = Workbook()
            ws = wb.active
            ws.title = f"Teams_Batch_{batch}"

            header_font = Font(bold=True, size=12, color="FFFFFF")
            header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
            border = Border(
                left=Side(style='thin'),
                right=Side(style='thin'),
                top=Side(style='thin'),
                bottom=Side(style='thin')
            )
            center_alignment = Alignment(horizontal='center', vertical='center')

            for col, header in enumerate(EXPORT_COLUMNS, 1):
                cell = ws.cell(row=1, column=col, value=header)
                cell.font = header_font
                cell.fill = header_fill
                cell.border = border
                cell.alignment = center_alignment

            for row_num, row in enumerate(rows, 2):
                undersized = not row.get('Member 3 Roll')
                for col, header in enumerate(EXPORT_COLUMNS, 1):
                    cell = ws.cell(row=row_num, column=col, value=row.get(header, ''))
                    cell.border = border
                    if undersized:
                        cell.fill = PatternFill(start_color="FFF2CC", end_color="FFF2CC", fill_type="solid")

            for col_idx, width in enumerate(self.COLUMN_WIDTHS, 1):
                ws.column_dimensions[get_column_letter(col_idx)].width = width

            self._add_summary_sheet(wb, batch, rows)

            os.makedirs(self.export_folder, exist_ok=True)
            filename = f"Teams_Batch_{batch}_{datetime.now().strftime('%Y-%m-%d')}.xlsx"
            filepath = os.path.join(self.export_folder, filename)
            wb.save(filepath)
            self._remove_stale_exports(batch, keep=filename)

            self.logger.info(f"Exported {len(rows)} teams to {filepath}")
            return filepath

        except Exception as e:
            self.logger.error(f"Error exporting teams: {str(e)}")
            return None

    def _remove_stale_exports(self, batch: str, keep: str):
        """Delete earlier exports of the same batch; only the latest file is kept."""
        prefix = f"Teams_Batch_{batch}_"
        for name in os.listdir(self.export_folder):
            if name.startswith(prefix) and name.endswith('.xlsx') and name != keep:
                os.remove(os.path.join(self.export_folder, name))
                self.logger.debug(f"Removed stale export {name}")

    def _add_summary_sheet(self, wb: Workbook, batch: str, rows: List[Dict]):
        ws = wb.create_sheet("Summary")

        ws.cell(row=1, column=1, value=f"Project Teams - Batch {batch}").font = Font(size=14, bold=True)
        ws.cell(row=2, column=1, value=f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        ws.cell(row=2, column=1).font = Font(size=10, italic=True)

        members = sum(
            1 for row in rows
            for slot in range(1, 4)
            if row.get(f'Member {slot} Roll')
        )
        full_teams = sum(1 for row in rows if row.get('Member 3 Roll'))

        stats = [
            ("Total Teams", len(rows)),
            ("Full Teams", full_teams),
            ("Undersized Teams", len(rows) - full_teams),
            ("Students Placed", members),
        ]
        for offset, (label, value) in enumerate(stats):
            ws.cell(row=4 + offset, column=1, value=label).font = Font(bold=True)
            ws.cell(row=4 + offset, column=2, value=value)

        ws.column_dimensions['A'].width = 20
        ws.column_dimensions['B'].width = 10
