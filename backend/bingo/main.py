from flask import Blueprint, jsonify
from flask_login import login_required, current_user

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the bingo room server!'})

@main.route('/api/me')
@login_required
def me():
    return jsonify(current_user.to_dict())
