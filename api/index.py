from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from settlement.api import create_app
from settlement.service import RewardService

app = create_app(RewardService(), root_path="/api")

handler = Mangum(app)
