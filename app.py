import os
import logging
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from werkzeug.utils import secure_filename

import database
from errors import TeamError
from excel_handler import ExcelHandler
from security import (
    admin_required,
    is_valid_batch,
    is_valid_choices,
    is_valid_roll_no,
    sign_out,
    student_required,
)
from team_logic import team_logic

# Set up logging
logging.basicConfig(level=logging.DEBUG)

ALLOWED_EXTENSIONS = {'xlsx', 'xls'}

bp = Blueprint('teams', __name__)


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def _batch_error():
    return jsonify({'error': 'Valid batch (A or B) required'}), 400


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def create_app(test_config=None):
    app = Flask(__name__)

    # Configuration
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SESSION_SECRET", "dev-secret-key-change-in-production"),
        DATABASE=os.environ.get("DATABASE_PATH", "teams.db"),
        ADMIN_KEY=os.environ.get("ADMIN_KEY"),
        UPLOAD_FOLDER='uploads',
        EXPORT_FOLDER='exports',
        MAX_CONTENT_LENGTH=16 * 1024 * 1024,  # 16MB max file size
    )
    if test_config is not None:
        app.config.from_mapping(test_config)

    app.config['UPLOAD_FOLDER'] = os.path.abspath(app.config['UPLOAD_FOLDER'])
    app.config['EXPORT_FOLDER'] = os.path.abspath(app.config['EXPORT_FOLDER'])

    # Ensure directories exist
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    os.makedirs(app.config['EXPORT_FOLDER'], exist_ok=True)

    if not app.config['ADMIN_KEY']:
        app.logger.warning("ADMIN_KEY is not set; admin endpoints will refuse every request")

    database.init_app(app)
    app.register_blueprint(bp)
    return app


@bp.app_errorhandler(TeamError)
def handle_team_error(e):
    return jsonify(e.to_dict()), e.status_code


# Health

@bp.route('/')
def index():
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'version': '1.0.0'
    })


@bp.route('/health')
def health():
    database.query_db("SELECT 1", one=True)
    return jsonify({'status': 'healthy'})


# Student routes

@bp.route('/auth/logout', methods=['POST'])
def logout():
    sign_out()
    return jsonify({'success': True})


@bp.route('/me')
@student_required
def me(roll_no, batch):
    return jsonify(team_logic.get_student_profile(roll_no))


@bp.route('/students')
@student_required
def students(roll_no, batch):
    return jsonify({'batch': batch, 'students': team_logic.get_students_by_batch(batch)})


@bp.route('/team/selection', methods=['POST'])
@student_required
def team_selection(roll_no, batch):
    choices = _json_body().get('choices')

    if not is_valid_choices(choices):
        return jsonify({'error': 'Must provide exactly 2 valid roll numbers'}), 400

    return jsonify(team_logic.save_preference(roll_no, choices))


@bp.route('/team/status')
@student_required
def team_status(roll_no, batch):
    return jsonify(team_logic.get_team_status(roll_no))


# Admin routes

@bp.route('/admin/selection/status')
@admin_required
def selection_status():
    return jsonify(team_logic.get_selection_status())


@bp.route('/admin/selection/<action>', methods=['POST'])
@admin_required
def toggle_selection(action):
    batch = _json_body().get('batch')
    if not is_valid_batch(batch):
        return _batch_error()

    if action == 'open':
        return jsonify(team_logic.open_selection(batch))
    if action == 'close':
        return jsonify(team_logic.close_selection(batch))
    return jsonify({'error': 'Unknown action'}), 404


@bp.route('/admin/finalize', methods=['POST'])
@admin_required
def finalize():
    batch = _json_body().get('batch')
    if not is_valid_batch(batch):
        return _batch_error()

    return jsonify(team_logic.finalize_teams(batch))


@bp.route('/admin/team/manual', methods=['POST'])
@admin_required
def manual_team():
    data = _json_body()
    batch = data.get('batch')
    members = data.get('members')

    if not is_valid_batch(batch):
        return _batch_error()
    if not isinstance(members, list) or not all(is_valid_roll_no(m) for m in members):
        return jsonify({'error': 'Members must be a list of valid roll numbers'}), 400

    team = team_logic.manual_create_team(batch, members)
    return jsonify(team_logic.team_payload(team)), 201


@bp.route('/admin/team/<int:team_id>', methods=['DELETE'])
@admin_required
def dissolve_team(team_id):
    return jsonify(team_logic.dissolve_team(team_id))


@bp.route('/admin/dashboard')
@admin_required
def dashboard():
    batch = request.args.get('batch')
    if not is_valid_batch(batch):
        return _batch_error()

    return jsonify(team_logic.get_admin_dashboard_data(batch))


@bp.route('/admin/export/teams')
@admin_required
def export_teams():
    batch = request.args.get('batch')
    if not is_valid_batch(batch):
        return _batch_error()

    try:
        rows = team_logic.get_export_data(batch)
        excel_handler = ExcelHandler(current_app.config['EXPORT_FOLDER'])
        filepath = excel_handler.export_teams(batch, rows)
        if not filepath:
            return jsonify({'error': 'Failed to generate Excel file'}), 500

        response = send_file(filepath, as_attachment=True, download_name=os.path.basename(filepath))
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate'
        return response

    except Exception as e:
        logging.error(f"Error exporting teams: {str(e)}")
        return jsonify({'error': 'Failed to generate Excel file'}), 500


@bp.route('/admin/students/upload', methods=['POST'])
@admin_required
def upload_students():
    if 'file' not in request.files:
        return jsonify({'error': 'No file uploaded'}), 400

    file = request.files['file']
    if not file.filename:
        return jsonify({'error': 'No file selected'}), 400
    if not allowed_file(file.filename):
        return jsonify({'error': 'Please upload an Excel file (.xlsx or .xls)'}), 400

    filename = secure_filename(file.filename)
    filepath = os.path.join(current_app.config['UPLOAD_FOLDER'], filename)
    file.save(filepath)

    try:
        students_df = ExcelHandler(current_app.config['EXPORT_FOLDER']).read_student_data(filepath)
    finally:
        os.remove(filepath)

    if students_df is None:
        return jsonify({'error': 'Error processing Excel file. Please check the format.'}), 400

    added = 0
    duplicates = 0
    skipped = 0
    for _, row in students_df.iterrows():
        if not is_valid_roll_no(row['roll_no']):
            skipped += 1
            continue
        if database.add_student(row['roll_no'], row['name'], row['batch']):
            added += 1
        else:
            duplicates += 1

    logging.info(f"Roster upload {filename}: {added} added, {duplicates} duplicates, {skipped} invalid")
    return jsonify({'added': added, 'duplicates': duplicates, 'skipped': skipped})


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), debug=True)
