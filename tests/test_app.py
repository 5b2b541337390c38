import unittest
import sys
import os

# Ensure we can import modules from the parent directory
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import app as app_module
from sample_data import overloaded_bundle, school_bundle


class TestApi(unittest.TestCase):
    def setUp(self):
        app_module.app.config['TESTING'] = True
        self.client = app_module.app.test_client()
        app_module.global_result = None
        app_module.global_data = None
        app_module.cancel_token.reset()

    def _generate(self, bundle=None, config=None):
        return self.client.post('/api/generate', json={"data": bundle or school_bundle(),
                                                       "config": config or {"seed": 5}})

    def test_generate_success(self):
        response = self._generate()
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['status'], 'success')
        cell = next(c for c in body['schedule']['1-1']['周一'].values() if c is not None)
        self.assertIn('teachers', cell)
        self.assertIn('t_yw', body['tracker'])

    def test_generate_config_error(self):
        bundle = school_bundle()
        bundle['teachers'].append({"id": "t_yw"})
        response = self._generate(bundle)
        self.assertEqual(response.status_code, 400)
        body = response.get_json()
        self.assertEqual(body['status'], 'error')
        self.assertIn('duplicate_id', [e['error_type'] for e in body['errors']])

    def test_generate_partial_is_returned(self):
        response = self._generate(overloaded_bundle(), {"max_backtrack_steps": 5})
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['status'], 'fail')
        self.assertTrue(body['suggestions'])

    def test_report_requires_generation(self):
        self.assertEqual(self.client.get('/api/report').status_code, 400)
        self._generate()
        response = self.client.get('/api/report')
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual(body['stats']['fill_rate'], 60.0)
        self.assertEqual(len(body['teachers']), 5)
        self.assertTrue(all(row['missing'] == 0 for row in body['classes']))

    def test_teacher_view(self):
        self.assertEqual(self.client.post('/api/teacher_view', json={"teacher_id": "t_yw"}).status_code, 400)
        self._generate()
        self.assertEqual(self.client.post('/api/teacher_view', json={}).status_code, 400)
        body = self.client.post('/api/teacher_view', json={"teacher_id": "t_yw"}).get_json()
        lessons = [cell for periods in body['schedule'].values() for cell in periods.values()]
        self.assertEqual(len(lessons), 10)
        self.assertEqual({cell['subject'] for cell in lessons}, {'语文'})

    def test_validate_round_trip(self):
        body = self._generate().get_json()
        response = self.client.post('/api/validate', json={"data": school_bundle(), "schedule": body['schedule']})
        self.assertEqual(response.status_code, 200)
        report = response.get_json()
        self.assertEqual(report['validation']['status'], 'accepted')
        self.assertEqual(report['quality']['total_score'], 100)

    def test_validate_rejects_cells_outside_grid(self):
        schedule = {"1-1": {"周一": {"1": "语文", "9": "数学"}}}
        response = self.client.post('/api/validate', json={"data": school_bundle(), "schedule": schedule})
        self.assertEqual(response.status_code, 400)

    def test_auto_generate_and_stop(self):
        response = self.client.post('/api/auto-generate', json={"data": school_bundle(),
                                                                "config": {"max_attempts": 2, "seed": 1}})
        body = response.get_json()
        self.assertEqual(body['status'], 'success')
        self.assertEqual(body['attempts'], 1)

        stop = self.client.post('/api/auto-generate/stop')
        self.assertEqual(stop.get_json()['status'], 'success')
        self.assertTrue(app_module.cancel_token.cancelled)


if __name__ == '__main__':
    unittest.main()
