from mangum import Mangum

from funding.api import create_app
from funding.config import get_settings

app = create_app(get_settings())

handler = Mangum(app)
